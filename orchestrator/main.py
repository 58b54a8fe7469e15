"""
Preview Orchestrator - FastAPI Server
=====================================

Main application entry point.

Usage:
    uvicorn orchestrator.main:app --host 0.0.0.0 --port 3001

    Or run directly:
    python -m orchestrator.main
"""

from dotenv import load_dotenv

# Load environment variables before settings are read anywhere else
load_dotenv()

from orchestrator.config import settings  # noqa: E402
from orchestrator.core.logging import setup_logging  # noqa: E402
from orchestrator.preview.api import create_app  # noqa: E402

logger = setup_logging("orchestrator")

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug_mode,
    )
