"""Pre-flight capacity check run before a migration starts scanning."""

import logging
from typing import Any

from .exceptions import PreflightError
from .repository_protocol import TableClient

logger = logging.getLogger(__name__)

PAY_PER_REQUEST = "PAY_PER_REQUEST"
PROVISIONED = "PROVISIONED"


def capacity_mode(description: dict[str, Any]) -> str:
    """
    Billing mode of a table from its DescribeTable description.

    Tables created with provisioned throughput may omit BillingModeSummary
    entirely, so a missing summary means PROVISIONED.
    """
    summary = description.get("BillingModeSummary") or {}
    mode: str = summary.get("BillingMode") or PROVISIONED
    return mode


def check(description: dict[str, Any], force: bool = False) -> bool:
    """Whether a full-table rewrite is allowed for this table."""
    return force or capacity_mode(description) == PAY_PER_REQUEST


async def ensure_allowed(client: TableClient, table_name: str, force: bool = False) -> str:
    """
    Fail fast unless `table_name` is on-demand or the check is forced.

    Returns:
        The table's billing mode

    Raises:
        PreflightError: If the table is not PAY_PER_REQUEST and force is False
        TableNotFoundError: If the table does not exist
    """
    description = await client.describe_table(table_name)
    mode = capacity_mode(description)
    if not check(description, force):
        raise PreflightError(table_name, mode)
    if mode != PAY_PER_REQUEST:
        logger.warning(
            "Table %s uses %s billing mode; migrating anyway because force is set",
            table_name,
            mode,
        )
    return mode
