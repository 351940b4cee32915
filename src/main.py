"""Main application entry point for the order settlement service.

Runs the same FastAPI application the Lambda serves, for local development
against DynamoDB Local.
"""

import logging
import os

from fastapi import FastAPI

from lambda_dependencies import get_dynamodb_resource, get_fastapi_app, get_table_names
from order_settlement_service.observability import configure_logging, setup_observability
from order_settlement_service.repositories.tables import create_tables

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    """Create and configure the FastAPI application with all dependencies.

    This factory function:
    1. Configures logging
    2. Creates missing tables when CREATE_TABLES=true
    3. Builds the application from the shared dependency factory
    4. Sets up observability

    Returns:
        Configured FastAPI application instance

    Raises:
        ConfigurationError: If required configuration is missing
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    configure_logging(log_level)

    logger.info("Initializing order settlement service...")

    if os.getenv("CREATE_TABLES", "false").lower() == "true":
        created = create_tables(get_dynamodb_resource(), get_table_names())
        logger.info(f"Created tables: {', '.join(created) or 'none missing'}")

    app = get_fastapi_app()
    setup_observability(app, enable_exporters=os.getenv("ENABLE_OTEL_EXPORTERS", "false") == "true")

    logger.info("Order settlement service initialized successfully")
    return app


# Create the FastAPI application instance (only when not in test mode)
# This prevents the app from being created during test collection
if os.getenv("ENVIRONMENT") != "test":  # noqa: SIM108
    app = create_application()
else:
    # Create a placeholder app for test imports
    app = FastAPI()


if __name__ == "__main__":
    """Run the application with uvicorn when executed directly."""
    import uvicorn

    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting development server on {host}:{port}")
    logger.info(f"API documentation available at http://{host}:{port}/docs")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=True,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
