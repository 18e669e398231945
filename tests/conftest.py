import os
import uuid
from datetime import timedelta

# newsfeed.config 在 import 时就实例化 settings，必须先把环境变量准备好
os.environ.setdefault("AUTH_SECRET_KEY", "test-secret-key-please-change")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("USER_DIRECTORY", "memory")
os.environ.setdefault("EMBEDDING_PROVIDER", "hash")
os.environ.setdefault("INGEST_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from newsfeed.config import settings
from newsfeed.deps import build_services
from newsfeed.domain.models import IncomingArticle, User, utcnow
from newsfeed.main import create_app
from newsfeed.repositories.inmemory import InMemoryUserDirectory
from newsfeed.services.auth_service import issue_token

ADMIN_KEY = "test-admin-key"
ADMIN = {"X-Admin-Key": ADMIN_KEY}


def make_article(title, body, source, hours_ago=1.0, now=None):
    now = now or utcnow()
    return IncomingArticle(title=title, body=body, source=source,
                           body_ref=f"s3://bodies/{uuid.uuid4()}",
                           published_at=now - timedelta(hours=hours_ago))


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_settings():
    return settings.model_copy(update={
        "STORE_BACKEND": "memory",
        "USER_DIRECTORY": "memory",
        "EMBEDDING_PROVIDER": "hash",
        "EMBEDDING_DIM": 256,
        "ADMIN_API_KEY": ADMIN_KEY,
        "INGEST_ENABLED": False,
        "DEBUG": False,
    })


@pytest.fixture
def directory():
    return InMemoryUserDirectory()


@pytest.fixture
def user(directory):
    return directory.add(User(id=uuid.uuid4(), name="alice", email="alice@example.com"))


@pytest.fixture
def token(user):
    return issue_token(user.id, settings.AUTH_SECRET_KEY, settings.AUTH_ALGORITHM)


@pytest.fixture
def new_token(directory):
    """Token factory for extra users in the same directory."""
    def _make(is_active=True):
        u = directory.add(User(id=uuid.uuid4(), is_active=is_active))
        return issue_token(u.id, settings.AUTH_SECRET_KEY, settings.AUTH_ALGORITHM)
    return _make


@pytest.fixture
def services(test_settings, directory):
    return build_services(test_settings, directory=directory)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture
def seed(client):
    """Hand articles to the admin queue and run one ingestion pass; returns their ids."""
    def _seed(articles):
        r = client.post("/admin/articles", json=[a.model_dump(mode="json") for a in articles], headers=ADMIN)
        assert r.status_code == 202, r.text
        r = client.post("/admin/ingest/run", headers=ADMIN)
        assert r.status_code == 200, r.text
        return [str(a.id) for a in articles]
    return _seed
