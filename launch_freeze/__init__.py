# launch_freeze/__init__.py
import os, sys

__version__ = "0.1.0"

_pkg_dir = os.path.dirname(__file__)
if _pkg_dir not in sys.path:
    # services and tests import the inner package as "app.*"
    sys.path.insert(0, _pkg_dir)

from .main import app  # FastAPI instance for uvicorn launch_freeze:app
from app.services.freeze import evaluate_launch_freeze  # noqa: E402

__all__ = ["app", "evaluate_launch_freeze", "__version__"]
