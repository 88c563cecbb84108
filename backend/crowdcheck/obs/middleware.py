"""Request instrumentation: request ids, bound log context, latency metrics."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from crowdcheck.obs import logging as obs_logging
from crowdcheck.obs import metrics

REQUEST_ID_HEADER = "X-Request-Id"

_access_log = obs_logging.get_logger("crowdcheck.http")


def _route_template(request: Request) -> str:
	# Label by template so /pending/{id} does not explode metric cardinality.
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


def _caller(request: Request) -> str | None:
	return request.headers.get("X-Forwarded-User") or request.headers.get("X-User-Id")


class ObservabilityMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		token = obs_logging.bind_context(request_id=request_id, user_id=_caller(request))
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			_access_log.exception("request failed", extra={"method": request.method})
			raise
		finally:
			route = _route_template(request)
			elapsed = time.perf_counter() - started
			metrics.observe_request(route, request.method, status_code, elapsed)
			_access_log.info(
				"request handled",
				extra={"method": request.method, "route": route, "status": status_code, "latency_ms": round(elapsed * 1000, 2)},
			)
			obs_logging.reset_context(token)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app: FastAPI) -> None:
	app.add_middleware(ObservabilityMiddleware)
