from starlette.requests import HTTPConnection

from engine.src.services.orchestrator import Orchestrator

def get_orchestrator(conn: HTTPConnection) -> Orchestrator:
    """The process-wide orchestrator created at startup."""
    return conn.app.state.orchestrator
