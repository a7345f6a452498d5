from fastapi import Request
from app.core.chains import ChainRegistry


def get_chain_registry(request: Request) -> ChainRegistry:
    return request.app.state.chain_registry


def get_verification_dispatcher(request: Request):
    """Callable that hands a submitted payment to the worker queue."""
    return request.app.state.dispatch_verification
