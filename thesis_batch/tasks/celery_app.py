# thesis_batch/tasks/celery_app.py
import os
import logging
from celery import Celery

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

def make_celery() -> Celery:
    """
    Base Celery instance for the batch workers and the beat poller.
    Logs whether the broker and the result backend are reachable.
    """
    celery_app = Celery("thesis_batch")

    broker_url = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
    result_backend = os.getenv("CELERY_RESULT_BACKEND", broker_url)
    poll_seconds = int(os.getenv("RECONCILE_POLL_SECONDS", "300"))

    celery_app.conf.update(
        broker_url=broker_url,
        result_backend=result_backend,
        task_ignore_result=False,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=os.getenv("TZ", "UTC"),
        enable_utc=True,
        task_acks_late=True,
        beat_schedule={
            "poll-active-batch-jobs": {
                "task": "batch.poll_active",
                "schedule": float(poll_seconds),
            },
        },
    )

    try:
        conn = celery_app.connection()
        conn.ensure_connection(max_retries=1)
        logger.info(f"Celery connected to broker: {broker_url}")
    except Exception as e:
        logger.error(f"Could not connect to Celery broker ({broker_url}): {e}")

    try:
        backend = celery_app.backend
        if backend:
            backend.ensure_not_eager()
            logger.info(f"Result backend configured: {result_backend}")
    except Exception as e:
        logger.error(f"Result backend error ({result_backend}): {e}")

    return celery_app

celery = make_celery()

def _init_celery_with_flask():
    """Bind the Celery tasks to a Flask app context."""
    from thesis_batch import create_app
    config_name = os.getenv("FLASK_ENV", "development")
    flask_app = create_app(config_name)

    broker = flask_app.config.get("CELERY_BROKER_URL")
    backend = flask_app.config.get("CELERY_RESULT_BACKEND") or broker

    if broker:
        celery.conf.broker_url = broker
    if backend:
        celery.conf.result_backend = backend

    TaskBase = celery.Task

    class ContextTask(TaskBase):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return TaskBase.__call__(self, *args, **kwargs)

    celery.Task = ContextTask
    celery.set_default()

    with flask_app.app_context():
        from thesis_batch.tasks import batch_tasks  # noqa: F401

    return flask_app

_flask_app = _init_celery_with_flask()
