"""Shared DynamoDB helpers for conditional writes, transactions and batching.

Conditional-check failures are expected outcomes of compare-and-set writes and
are reported as ``False``. Every other ``ClientError`` on the write path is
raised as ``StoreUnavailableError`` so that callers never mistake an outage for
a lost race.

Transaction actions carry plain Python values: they are sent through the
resource's client, which serializes them like any other resource call.
"""

import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import Any, TypeVar

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource

from order_settlement_service.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# DynamoDB service limits
TRANSACTION_ACTION_LIMIT = 100
BATCH_WRITE_LIMIT = 25

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield successive lists of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")

    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def is_conditional_check_failure(error: ClientError) -> bool:
    return error_code(error) == "ConditionalCheckFailedException"


def is_transaction_conflict(error: ClientError) -> bool:
    """True when an in-flight transaction holds the item the write targeted."""
    return error_code(error) == "TransactionConflictException"


def store_error(operation: str, error: Exception) -> StoreUnavailableError:
    """Wrap a botocore failure in the transient store error."""
    logger.error(f"DynamoDB {operation} failed: {error}")
    return StoreUnavailableError(f"DynamoDB {operation} failed: {error}")


def update_action(
    table_name: str,
    key: dict[str, Any],
    update_expression: str,
    condition_expression: str | None = None,
    names: dict[str, str] | None = None,
    values: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build an ``Update`` action for ``transact_write_items``."""
    action: dict[str, Any] = {
        "TableName": table_name,
        "Key": dict(key),
        "UpdateExpression": update_expression,
    }
    _add_expression_parts(action, condition_expression, names, values)
    return {"Update": action}


def put_action(
    table_name: str,
    item: dict[str, Any],
    condition_expression: str | None = None,
    names: dict[str, str] | None = None,
    values: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a ``Put`` action for ``transact_write_items``."""
    action: dict[str, Any] = {"TableName": table_name, "Item": dict(item)}
    _add_expression_parts(action, condition_expression, names, values)
    return {"Put": action}


def delete_action(
    table_name: str,
    key: dict[str, Any],
    condition_expression: str | None = None,
    names: dict[str, str] | None = None,
    values: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a ``Delete`` action for ``transact_write_items``."""
    action: dict[str, Any] = {"TableName": table_name, "Key": dict(key)}
    _add_expression_parts(action, condition_expression, names, values)
    return {"Delete": action}


def _add_expression_parts(
    action: dict[str, Any],
    condition_expression: str | None,
    names: dict[str, str] | None,
    values: dict[str, Any] | None,
) -> None:
    if condition_expression:
        action["ConditionExpression"] = condition_expression
    if names:
        action["ExpressionAttributeNames"] = names
    if values:
        action["ExpressionAttributeValues"] = dict(values)


def transact_write(
    dynamodb_resource: DynamoDBServiceResource, actions: Sequence[dict[str, Any]]
) -> bool:
    """Apply actions atomically.

    Args:
        dynamodb_resource: Boto3 DynamoDB resource
        actions: Transaction actions built with the helpers above

    Returns:
        bool: True if committed, False if a condition check cancelled it

    Raises:
        ValueError: If the transaction exceeds the service action limit
        StoreUnavailableError: On any other DynamoDB failure
    """
    if not actions:
        return True

    if len(actions) > TRANSACTION_ACTION_LIMIT:
        raise ValueError(
            f"Transaction has {len(actions)} actions, limit is {TRANSACTION_ACTION_LIMIT}"
        )

    try:
        dynamodb_resource.meta.client.transact_write_items(TransactItems=list(actions))
        return True

    except ClientError as e:
        if error_code(e) != "TransactionCanceledException":
            raise store_error("TransactWriteItems", e) from e

        reasons = e.response.get("CancellationReasons") or []
        codes = {reason.get("Code") for reason in reasons}
        if not reasons or "ConditionalCheckFailed" in codes:
            logger.debug(f"Transaction cancelled by condition check: {codes}")
            return False

        raise store_error("TransactWriteItems", e) from e

    except BotoCoreError as e:
        raise store_error("TransactWriteItems", e) from e
