#!/usr/bin/env python3
"""
Entry point for the Streaming Media API.
Runs the FastAPI app from app.server with uvicorn.
"""
import os
import sys
import logging

# Configure basic logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the application"""
    try:
        import uvicorn

        port = int(os.environ.get("PORT", 8080))
        reload = os.environ.get("RELOAD", "").lower() in ("1", "true", "yes")
        logger.info(f"Starting server on port {port} (reload={reload})")

        uvicorn.run(
            "app.server:app",
            host=os.environ.get("HOST", "0.0.0.0"),
            port=port,
            reload=reload,
            log_level=os.environ.get("LOG_LEVEL", "info").lower(),
        )
    except Exception as e:
        logger.error(f"Error starting application: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
