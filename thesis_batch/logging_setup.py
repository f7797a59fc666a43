import logging
import json
import time
from flask import has_request_context, request

# Extra attributes that services attach via `logger.info(..., extra={...})`
CONTEXT_FIELDS = ("batch_job_id", "project_id", "bulk_job_id", "external_batch_id")


class JsonRequestFormatter(logging.Formatter):
    def format(self, record):
        # health checks are noise
        if has_request_context() and request.path == "/healthz":
            return ""

        data = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value

        if has_request_context():
            data.update({
                "method": request.method,
                "path": request.path,
                "remote_addr": request.headers.get("X-Forwarded-For", request.remote_addr),
                "request_id": request.headers.get("X-Request-ID"),
                "user_id": request.headers.get("X-User-Id"),
            })

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, ensure_ascii=False)


def setup_logging(app=None):
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    # avoid duplicated handlers on reload
    for h in list(root.handlers):
        root.removeHandler(h)

    h = logging.StreamHandler()
    h.setFormatter(JsonRequestFormatter())
    root.addHandler(h)

    if app:
        app.logger.handlers = [h]
        app.logger.setLevel(logging.DEBUG if app.config.get("DEBUG") else logging.INFO)
