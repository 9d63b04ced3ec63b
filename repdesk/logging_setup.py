# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

"""
Structured JSON logging.

Every record carries the service name, environment and, while serving a
request, its X-Request-ID. Fields whose name looks secret are redacted, and
so are string values shaped like Meta or Google credentials, whatever the
field is called.
"""

import logging
import re
import sys
import contextvars
import threading
import queue
import time
import requests
import json
import uuid
from datetime import datetime, timezone
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware
from .config import settings

request_id_var = contextvars.ContextVar("request_id", default=None)

SERVICE_NAME = "repdesk"
REDACTED = "***REDACTED***"

SECRET_KEYS = ["token", "secret", "password", "key", "authorization", "cookie", "signature"]

# Instagram Login (IGAA), Facebook (EAA), Google access (ya29.) and refresh (1//) tokens
CREDENTIAL_VALUE = re.compile(r"\b(IGAA|EAA[A-Za-z0-9]|ya29\.|1//)[A-Za-z0-9._\-]{8,}")

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

AXIOM_BATCH_SIZE = 50
AXIOM_FLUSH_SECONDS = 3.0

def redact_value(value):
    if isinstance(value, str):
        return CREDENTIAL_VALUE.sub(REDACTED, value)
    return value

class RedactingJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

        log_record["level"] = (log_record.get("level") or record.levelname).upper()

        req_id = request_id_var.get()
        if req_id:
            log_record["request_id"] = req_id

        log_record["environment"] = "production" if settings.axiom_token else "local"
        log_record["service_name"] = SERVICE_NAME

        # Booleans and counts under secret-looking names (header_present, has_token) are kept
        for key, value in list(log_record.items()):
            if not isinstance(value, str):
                continue
            if any(s in key.lower() for s in SECRET_KEYS):
                log_record[key] = REDACTED
            else:
                log_record[key] = redact_value(value)

class AxiomHandler(logging.Handler):
    """Ships formatted records to Axiom from a daemon thread, in batches."""
    def __init__(self):
        super().__init__()
        self.queue = queue.Queue(maxsize=10000)
        self.worker = threading.Thread(target=self._ship_logs, daemon=True)
        self.worker.start()

    def _ship_logs(self):
        batch = []
        last_flush = time.monotonic()
        while True:
            try:
                batch.append(self.queue.get(timeout=AXIOM_FLUSH_SECONDS))
            except queue.Empty:
                pass

            due = time.monotonic() - last_flush >= AXIOM_FLUSH_SECONDS
            if batch and (len(batch) >= AXIOM_BATCH_SIZE or due or self.queue.empty()):
                self._send_to_axiom(batch)
                batch = []
                last_flush = time.monotonic()

    def _send_to_axiom(self, batch):
        if not settings.axiom_token or not settings.axiom_dataset:
            return

        url = f"{settings.axiom_url.rstrip('/')}/v1/datasets/{settings.axiom_dataset}/ingest"
        headers = {
            "Authorization": f"Bearer {settings.axiom_token}",
            "Content-Type": "application/json"
        }
        if settings.axiom_org_id:
            headers["X-Axiom-Org-Id"] = settings.axiom_org_id

        try:
            requests.post(url, headers=headers, json=batch, timeout=5.0)
        except requests.RequestException as e:
            # The shipping thread outlives Axiom outages; report on stderr only
            sys.stderr.write(f"axiom shipping failed: {e}\n")

    def emit(self, record):
        if not settings.axiom_token:
            return
        try:
            self.queue.put_nowait(json.loads(self.format(record)))
        except queue.Full:
            sys.stderr.write("axiom queue full, dropping log record\n")
        except Exception:
            self.handleError(record)

class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tags every log line emitted while serving a request with its X-Request-ID."""
    async def dispatch(self, request, call_next):
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = req_id
        return response

def setup_logging():
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = RedactingJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if settings.axiom_token:
        axiom_handler = AxiomHandler()
        axiom_handler.setFormatter(formatter)
        root.addHandler(axiom_handler)

    # Quiet per-request access lines and scheduler ticks
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

def log_event(event: str, level: str = "info", **fields):
    """Logs one structured event; None-valued fields are dropped."""
    extra = {k: v for k, v in fields.items() if v is not None}
    extra["event"] = event
    logging.getLogger(SERVICE_NAME).log(LEVELS.get(level.lower(), logging.INFO), event, extra=extra)
