# thesis_batch/services/batch_client.py
"""
Client for the OpenAI-compatible batch endpoint (Groq by default).

Exposes the four capabilities the pipeline relies on: upload, create_batch,
get_batch and download. SDK exceptions are translated into
BatchEndpointError so callers never see transport types.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai
from flask import current_app
from openai import OpenAI

from thesis_batch.errors import BatchEndpointError

logger = logging.getLogger(__name__)


@dataclass
class BatchInfo:
    id: str
    status: str
    input_file_id: Optional[str] = None
    output_file_id: Optional[str] = None
    error_file_id: Optional[str] = None
    request_counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    created_at: Optional[int] = None
    completion_window: Optional[str] = None

    @classmethod
    def from_sdk(cls, batch: Any) -> "BatchInfo":
        # SDK objects are pydantic models; tests and older SDKs hand plain dicts
        dump = getattr(batch, "model_dump", None)
        data = dump() if callable(dump) else dict(batch)

        errors: List[str] = []
        raw_errors = data.get("errors") or {}
        for item in (raw_errors.get("data") or []) if isinstance(raw_errors, dict) else raw_errors:
            if isinstance(item, dict):
                errors.append(item.get("message") or item.get("code") or "unknown error")
            else:
                errors.append(str(item))

        counts = data.get("request_counts") or {}
        return cls(
            id=data["id"],
            status=data.get("status") or "unknown",
            input_file_id=data.get("input_file_id"),
            output_file_id=data.get("output_file_id"),
            error_file_id=data.get("error_file_id"),
            request_counts={k: int(counts.get(k) or 0) for k in ("total", "completed", "failed")},
            errors=errors,
            created_at=data.get("created_at"),
            completion_window=data.get("completion_window"),
        )


class BatchClient:
    def __init__(self, api_key: str, base_url: str, endpoint: str = "/v1/chat/completions",
                 completion_window: str = "24h", timeout: float = 60):
        if not api_key:
            raise RuntimeError("Batch endpoint API key is not configured (GROQ_API_KEY)")
        self.endpoint = endpoint
        self.completion_window = completion_window
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=2)

    def upload(self, content: bytes, filename: str) -> str:
        try:
            uploaded = self._client.files.create(file=(filename, content), purpose="batch")
        except openai.OpenAIError as e:
            raise BatchEndpointError(f"File upload failed: {_describe(e)}") from e
        logger.info(f"Uploaded batch input file {uploaded.id} ({len(content)} bytes)")
        return uploaded.id

    def create_batch(self, input_file_id: str, metadata: Optional[Dict[str, Any]] = None) -> BatchInfo:
        try:
            batch = self._client.batches.create(
                input_file_id=input_file_id,
                endpoint=self.endpoint,
                completion_window=self.completion_window,
                metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
            )
        except openai.OpenAIError as e:
            raise BatchEndpointError(f"Batch creation failed: {_describe(e)}") from e
        return BatchInfo.from_sdk(batch)

    def get_batch(self, batch_id: str) -> BatchInfo:
        try:
            batch = self._client.batches.retrieve(batch_id)
        except openai.OpenAIError as e:
            raise BatchEndpointError(f"Batch status fetch failed: {_describe(e)}") from e
        return BatchInfo.from_sdk(batch)

    def download(self, file_id: str) -> bytes:
        try:
            response = self._client.files.content(file_id)
        except openai.OpenAIError as e:
            raise BatchEndpointError(f"File download failed: {_describe(e)}") from e
        return response.content


def _describe(exc: Exception) -> str:
    status = getattr(exc, "status_code", None)
    name = type(exc).__name__
    return f"{name} (HTTP {status})" if status else name


def get_batch_client():
    """Client bound to the current app, built once and cached on app.extensions."""
    app = current_app._get_current_object()
    client = app.extensions.get("batch_client")
    if client is None:
        cfg = app.config
        client = BatchClient(
            api_key=cfg["BATCH_API_KEY"],
            base_url=cfg["BATCH_API_BASE_URL"],
            endpoint=cfg["BATCH_ENDPOINT"],
            completion_window=cfg["BATCH_COMPLETION_WINDOW"],
            timeout=cfg["BATCH_REQUEST_TIMEOUT"],
        )
        app.extensions["batch_client"] = client
    return client
