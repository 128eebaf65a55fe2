"""FastAPI dependencies for the process-owned engine objects.

The lifespan in promptwatch.main puts the broker, store and runner on
``app.state``. Tests set them directly.
"""

from fastapi import Request

from promptwatch.execution.broadcaster import UpdateBroker
from promptwatch.execution.runner import ExecutionRunner
from promptwatch.execution.store import ExecutionStore


def get_broker(request: Request) -> UpdateBroker:
    return request.app.state.broker


def get_store(request: Request) -> ExecutionStore:
    return request.app.state.store


def get_runner(request: Request) -> ExecutionRunner:
    return request.app.state.runner
