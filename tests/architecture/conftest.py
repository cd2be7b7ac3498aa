"""Architecture test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from pytestarch import EvaluableArchitecture, LayeredArchitecture, get_evaluable_architecture

# tests/architecture/conftest.py -> tests/ -> project root
_TESTS_DIR = Path(__file__).resolve().parent.parent
_PROJECT_ROOT = _TESTS_DIR.parent
_PACKAGE_DIR = _PROJECT_ROOT / "src" / "task_escrow_service"


@pytest.fixture(scope="session")
def evaluable() -> EvaluableArchitecture:
    """Build the evaluable architecture graph for task_escrow_service."""
    return get_evaluable_architecture(str(_PACKAGE_DIR), str(_PACKAGE_DIR))


@pytest.fixture(scope="session")
def layered_arch() -> LayeredArchitecture:
    """Define the service's layered architecture.

    Layers (top to bottom):
        routers   - HTTP endpoint handlers (thin wrappers)
        core      - App state, lifespan, middleware, exception handlers
        services  - Business logic and storage (no FastAPI imports)
    """
    return (
        LayeredArchitecture()
        .layer("routers")
        .containing_modules(["task_escrow_service.routers"])
        .layer("core")
        .containing_modules(["task_escrow_service.core"])
        .layer("services")
        .containing_modules(["task_escrow_service.services"])
    )
