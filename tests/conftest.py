import os
import pytest

from thesis_batch import create_app
from thesis_batch.models import db as _db, Project, RawChunk

from fakes import FakeBatchClient

USER = "user-1"


@pytest.fixture(scope="session")
def app():
    os.environ["FLASK_ENV"] = "testing"
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def clean_tables(app):
    yield
    _db.session.rollback()
    for table in reversed(_db.metadata.sorted_tables):
        _db.session.execute(table.delete())
    _db.session.commit()
    app.extensions.pop("batch_client", None)


@pytest.fixture()
def fake_client(app):
    fake = FakeBatchClient()
    app.extensions["batch_client"] = fake
    return fake


@pytest.fixture(autouse=True)
def dispatched(monkeypatch):
    """Submission is queued on Celery in production; tests just record the job ids."""
    queued = []
    monkeypatch.setattr(
        "thesis_batch.services.submission_service.dispatch_submission", queued.append
    )
    return queued


@pytest.fixture()
def make_project():
    def _make(user_id=USER, level="magistrale", status="active", title="Tesi di prova"):
        project = Project(
            user_id=user_id,
            project_title=title,
            faculty="Ingegneria",
            thesis_topic="Sistemi distribuiti",
            level=level,
            status=status,
        )
        _db.session.add(project)
        _db.session.commit()
        return project
    return _make


@pytest.fixture()
def make_chunks():
    def _make(project, n=3, text=None, user_id=None):
        chunks = []
        for i in range(n):
            content = text if text is not None else f"Capitolo {i + 1}: contenuto del frammento {i + 1}."
            chunk = RawChunk(
                project_id=project.id,
                user_id=user_id or project.user_id,
                order_index=i,
                content=content,
                char_count=len(content),
            )
            _db.session.add(chunk)
            chunks.append(chunk)
        _db.session.commit()
        return chunks
    return _make
