"""Router package – registers all FastAPI routers on the application."""

from fastapi import FastAPI


def register_routers(app: FastAPI) -> None:
    """Include all routers on the FastAPI application.

    Imports are deferred to avoid a circular import: each router module
    does ``import main``, which in turn calls ``register_routers`` while
    it is still being imported.
    """
    from routers import core, diagnostics, stream

    for module in (core, stream, diagnostics):
        app.include_router(module.router)
