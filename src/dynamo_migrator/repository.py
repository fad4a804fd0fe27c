"""DynamoDB repository used by migrations."""

from typing import Any

import aioboto3  # type: ignore[import-untyped]
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer  # type: ignore[import-untyped]
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import TableNotFoundError, TransportError
from .models import Cursor, Item, WriteRequest
from .repository_protocol import BatchWriteResult, ScanResult

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def serialize_item(data: Item) -> dict[str, Any]:
    """Serialize a plain dict to DynamoDB attribute values."""
    return {key: _serializer.serialize(value) for key, value in data.items()}


def deserialize_item(data: dict[str, Any]) -> Item:
    """Deserialize DynamoDB attribute values to a plain dict."""
    return {key: _deserializer.deserialize(value) for key, value in data.items()}


def serialize_request(request: WriteRequest) -> dict[str, Any]:
    """Convert a Put or Delete write request to the BatchWriteItem wire format."""
    if "PutRequest" in request:
        return {"PutRequest": {"Item": serialize_item(request["PutRequest"]["Item"])}}
    if "DeleteRequest" in request:
        return {"DeleteRequest": {"Key": serialize_item(request["DeleteRequest"]["Key"])}}
    raise ValueError(f"Unsupported write request: {sorted(request)}")


def deserialize_request(request: dict[str, Any]) -> WriteRequest:
    """Inverse of `serialize_request`."""
    if "PutRequest" in request:
        return {"PutRequest": {"Item": deserialize_item(request["PutRequest"]["Item"])}}
    if "DeleteRequest" in request:
        return {"DeleteRequest": {"Key": deserialize_item(request["DeleteRequest"]["Key"])}}
    raise ValueError(f"Unsupported write request: {sorted(request)}")


class Repository:
    """
    Async DynamoDB repository for migrations.

    Wraps an aioboto3 DynamoDB client. Items are exchanged as plain Python
    values, the same shape boto3's resource API and the DocumentClient use;
    conversion to and from attribute-value maps happens here.

    One repository can read from and write to any number of tables, so
    batch handlers can fan out to secondary tables over the same connection.
    """

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        self.region = region
        self.endpoint_url = endpoint_url
        self._session: aioboto3.Session | None = None
        self._client: Any = None

    async def _get_client(self, table_name: str, operation: str) -> Any:
        """Get or create the DynamoDB client."""
        if self._client is None:
            try:
                self._session = aioboto3.Session()
                self._client = await self._session.client(
                    "dynamodb",
                    region_name=self.region,
                    endpoint_url=self.endpoint_url,
                ).__aenter__()
            except (ClientError, BotoCoreError) as e:
                self._session = None
                raise TransportError(
                    f"Could not create DynamoDB client: {e}",
                    e,
                    table_name=table_name,
                    operation=operation,
                ) from e
        return self._client

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client is not None:
            await self._client.__aexit__(None, None, None)
            self._client = None
            self._session = None

    async def __aenter__(self) -> "Repository":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Table operations
    # -------------------------------------------------------------------------

    async def describe_table(self, table_name: str) -> dict[str, Any]:
        """Return the ``Table`` description of `table_name`."""
        client = await self._get_client(table_name, "DescribeTable")
        try:
            response = await client.describe_table(TableName=table_name)
        except (ClientError, BotoCoreError) as e:
            raise self._transport_error(e, table_name, "DescribeTable") from e
        table: dict[str, Any] = response["Table"]
        return table

    async def scan(
        self,
        table_name: str,
        cursor: Cursor | None = None,
        limit: int = 25,
    ) -> ScanResult:
        """
        Scan one page of `table_name`.

        Args:
            table_name: Table to scan
            cursor: LastEvaluatedKey of the previous page (None: start of table)
            limit: Maximum number of items to evaluate

        Returns:
            ScanResult with deserialized items, the next cursor (None when the
            scan is finished) and the consumed read capacity
        """
        client = await self._get_client(table_name, "Scan")
        kwargs: dict[str, Any] = {
            "TableName": table_name,
            "Limit": limit,
            "ReturnConsumedCapacity": "TOTAL",
        }
        if cursor:
            kwargs["ExclusiveStartKey"] = cursor

        try:
            response = await client.scan(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise self._transport_error(e, table_name, "Scan") from e

        capacity = response.get("ConsumedCapacity") or {}
        return ScanResult(
            items=[deserialize_item(item) for item in response.get("Items", [])],
            cursor=response.get("LastEvaluatedKey"),
            consumed_capacity=float(capacity.get("CapacityUnits", 0)),
        )

    async def batch_write(
        self,
        table_name: str,
        requests: list[WriteRequest],
    ) -> BatchWriteResult:
        """
        Submit one BatchWriteItem call for `table_name`.

        Returns:
            BatchWriteResult with any unprocessed requests, keyed by table
            and deserialized back to plain values
        """
        request_items = {table_name: [serialize_request(r) for r in requests]}
        client = await self._get_client(table_name, "BatchWriteItem")

        try:
            response = await client.batch_write_item(
                RequestItems=request_items,
                ReturnConsumedCapacity="TOTAL",
            )
        except (ClientError, BotoCoreError) as e:
            raise self._transport_error(e, table_name, "BatchWriteItem") from e

        unprocessed = {
            table: [deserialize_request(r) for r in table_requests]
            for table, table_requests in (response.get("UnprocessedItems") or {}).items()
            if table_requests
        }
        consumed = sum(
            float(c.get("CapacityUnits", 0)) for c in response.get("ConsumedCapacity") or []
        )
        return BatchWriteResult(unprocessed=unprocessed, consumed_capacity=consumed)

    def _transport_error(
        self, error: Exception, table_name: str, operation: str
    ) -> TransportError:
        if isinstance(error, ClientError):
            if error.response["Error"]["Code"] == "ResourceNotFoundException":
                return TableNotFoundError(table_name, error, operation=operation)
        return TransportError(
            f"DynamoDB {operation} failed: {error}",
            error,
            table_name=table_name,
            operation=operation,
        )
