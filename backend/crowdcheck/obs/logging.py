"""JSON logging for the crowdcheck service.

Request-scoped fields (request id, route template, caller identity) are bound
once per request by the middleware and merged into every record emitted while
the request is in flight. Record ``extra`` fields are sanitised before output:
long strings and collections are truncated and anything that looks like a
credential or a reporter's position is replaced with ``[redacted]``.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from crowdcheck.settings import settings

_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("crowdcheck_log_context", default={})

_ROOT_LOGGER = "crowdcheck"

_REDACTED = "[redacted]"
_REDACT_EXACT = frozenset({"lat", "lon", "lng", "latitude", "longitude", "location", "coordinates"})
_REDACT_FRAGMENTS = ("token", "secret", "password", "authorization")

_STRING_LIMIT = 256
_ITEM_LIMIT = 10

# Attributes every LogRecord carries; anything else on the record came from ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Layer ``fields`` over the current context; ``None`` values are skipped."""
	merged = dict(_CONTEXT.get())
	merged.update({key: value for key, value in fields.items() if value is not None})
	return _CONTEXT.set(merged)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def current_request_id() -> Optional[str]:
	return _CONTEXT.get().get("request_id")


def _should_redact(key: str) -> bool:
	lowered = key.lower()
	if lowered in _REDACT_EXACT:
		return True
	parts = lowered.split("_")
	if parts[0] in _REDACT_EXACT or parts[-1] in _REDACT_EXACT:
		return True
	return any(fragment in lowered for fragment in _REDACT_FRAGMENTS)


def _clean(key: str, value: Any) -> Any:
	if _should_redact(key):
		return _REDACTED
	if isinstance(value, str):
		return value if len(value) <= _STRING_LIMIT else value[:_STRING_LIMIT] + "…"
	if isinstance(value, datetime):
		return value.isoformat()
	if isinstance(value, Mapping):
		cleaned = {str(k): _clean(str(k), v) for k, v in list(value.items())[:_ITEM_LIMIT]}
		if len(value) > _ITEM_LIMIT:
			cleaned["…"] = f"+{len(value) - _ITEM_LIMIT} keys"
		return cleaned
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clean(key, item) for item in list(value)[:_ITEM_LIMIT]]
		if len(value) > _ITEM_LIMIT:
			items.append("…")
		return items
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: static service fields, bound context, then extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_CONTEXT.get())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key in _STANDARD_ATTRS or key in payload:
				continue
			payload[key] = _clean(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a random share of INFO records; other levels always pass."""

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
	return logging.getLogger(_ROOT_LOGGER)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)
