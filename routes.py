# routes.py
from fastapi import FastAPI
from controller.job_controller import job_router
from controller.library_controller import library_router


def register_routes(app: FastAPI) -> None:
    """Register & Access control controllers here."""
    app.include_router(job_router)
    app.include_router(library_router)
