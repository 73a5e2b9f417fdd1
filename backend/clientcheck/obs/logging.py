"""JSON logging for the trust service.

Request-scoped fields (request id, route template, acting user) are carried in
context variables by the HTTP middleware and stamped on every record emitted
while the request is in flight. Free text supplied by users, such as review
bodies and flag reasons, never reaches the log stream.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from clientcheck.settings import settings

_LOGGER_NAME = "clientcheck"

_CONTEXT_FIELDS: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("trust_request_id", default=None),
	"route": ContextVar("trust_route", default=None),
	"actor_id": ContextVar("trust_actor_id", default=None),
}

# Matched as substrings of the lower-cased extra key.
_REDACTED_KEYS = (
	"token",
	"secret",
	"authorization",
	"password",
	"review_text",
	"reason",
	"result_data",
)

_STRING_LIMIT = 256
_ITEM_LIMIT = 10

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind request fields for the current task; pass the result to :func:`reset_context`."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		var = _CONTEXT_FIELDS.get(name)
		if var is not None and value is not None:
			tokens[name] = var.set(str(value))
	return tokens


def reset_context(tokens: Mapping[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT_FIELDS[name].reset(token)


def _clip(value: Any) -> Any:
	if isinstance(value, str) and len(value) > _STRING_LIMIT:
		return value[:_STRING_LIMIT] + "…"
	if isinstance(value, Mapping):
		items = list(value.items())
		clipped = {str(k): _scrub(str(k), v) for k, v in items[:_ITEM_LIMIT]}
		if len(items) > _ITEM_LIMIT:
			clipped["…"] = f"+{len(items) - _ITEM_LIMIT} keys"
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clip(item) for item in value]
		return items[:_ITEM_LIMIT] + (["…"] if len(items) > _ITEM_LIMIT else [])
	if isinstance(value, datetime):
		return value.isoformat()
	return value


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACTED_KEYS):
		return "[redacted]"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record; ``extra`` fields are scrubbed and merged in."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for name, var in _CONTEXT_FIELDS.items():
			value = var.get()
			if value:
				payload[name] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key not in _STANDARD_ATTRS and key not in payload:
				payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = min(1.0, max(0.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
