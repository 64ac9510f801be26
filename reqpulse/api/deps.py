from __future__ import annotations

from starlette.requests import HTTPConnection

from reqpulse.runtime import Observability


def get_observability(conn: HTTPConnection) -> Observability:
    return conn.app.state.observability
