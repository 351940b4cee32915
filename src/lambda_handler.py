"""AWS Lambda handler for both API Gateway and EventBridge events.

This module provides a single Lambda entry point that handles:
1. API Gateway requests (via Mangum ASGI adapter for FastAPI)
2. EventBridge ``SweepRequested`` events from the sweep schedule

The handler automatically detects the event type and routes accordingly.
"""

import asyncio
import logging
import os
from typing import Any

from mangum import Mangum

from lambda_dependencies import get_fastapi_app, get_sweep_handler, initialize_lambda_environment

logger = logging.getLogger(__name__)

# Create FastAPI app and Mangum adapter (cached for warm starts, skip in test mode)
if os.getenv("ENVIRONMENT") != "test":
    app = get_fastapi_app()
    initialize_lambda_environment(app)
    mangum_handler = Mangum(app, lifespan="off")
else:
    app = None  # type: ignore
    mangum_handler = None  # type: ignore


def is_eventbridge_event(event: dict[str, Any]) -> bool:
    """Determine if the event is from EventBridge.

    Args:
        event: The Lambda event payload

    Returns:
        True if this is an EventBridge event, False otherwise
    """
    # API Gateway events carry 'requestContext' instead
    return "source" in event and "detail-type" in event and "detail" in event


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Multi-purpose Lambda handler for API Gateway and EventBridge events.

    Routes incoming events to the appropriate handler:
    - EventBridge events -> SweepEventHandler
    - API Gateway requests -> FastAPI via Mangum

    Args:
        event: The Lambda event payload (EventBridge or API Gateway)
        context: The Lambda context object

    Returns:
        Response dict with statusCode and body
    """
    logger.info(f"Received Lambda invocation, request_id: {context.aws_request_id}")

    try:
        if is_eventbridge_event(event):
            logger.info(
                f"Processing EventBridge event: {event.get('source')} - {event.get('detail-type')}"
            )
            return handle_eventbridge_event(event, context)

        logger.info("Processing API Gateway request via Mangum")
        result: dict[str, Any] = mangum_handler(event, context)
        return result

    except Exception as e:
        logger.exception(f"Unhandled error in Lambda handler: {e}")
        return {
            "statusCode": 500,
            "body": "Internal server error",
        }


def handle_eventbridge_event(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Run the sweep requested by an EventBridge event.

    Args:
        event: The EventBridge event payload
        context: The Lambda context object

    Returns:
        Response dict with statusCode and body
    """
    sweep_handler = get_sweep_handler()
    response: dict[str, Any] = asyncio.run(sweep_handler.handle_eventbridge_event(event, context))

    if response["statusCode"] == 200:
        logger.info(f"Sweep completed: {response['body']}")
    else:
        logger.error(f"Sweep event not processed: {response['body']}")

    return response
