"""DynamoDB-backed record store (single table, ``pk``/``sk`` keys).

Partition layout:
    structure#<provider>   sk = zero-padded position
    summarizer#<provider>  sk = zero-padded position
    command                sk = record id
    custom_provider        sk = record id
    token                  sk = record id
    request_log            sk = request id

boto3 is synchronous, so every call is pushed onto a worker thread.
"""

import asyncio
import json
import uuid
from collections.abc import Iterable
from datetime import datetime

from src.logging.audit import get_logger
from src.store.models import (
    CallerToken,
    CommandDefinition,
    CustomProvider,
    PromptBlock,
    RequestLogEntry,
    utcnow,
)
from src.store.store import RecordStore, renumber, validate_command

logger = get_logger("store")

COMMAND_PK = "command"
CUSTOM_PROVIDER_PK = "custom_provider"
TOKEN_PK = "token"
REQUEST_LOG_PK = "request_log"


def _position_key(position: int) -> str:
    return f"{position:05d}"


def _strip_keys(item: dict) -> dict:
    return {k: v for k, v in item.items() if k not in ("pk", "sk")}


class DynamoDBRecordStore(RecordStore):
    """Record store over one DynamoDB table with a composite ``pk``/``sk`` key."""

    MAX_TRANSACTION_ITEMS = 100  # DynamoDB TransactWriteItems limit

    def __init__(self, table_name: str, region: str = "us-east-1"):
        self._table_name = table_name
        self._region = region
        self._table = None

    def _get_table(self):
        """Lazy-init boto3 Table resource."""
        if self._table is None:
            import boto3

            dynamodb = boto3.resource("dynamodb", region_name=self._region)
            self._table = dynamodb.Table(self._table_name)
        return self._table

    # --- Low-level helpers (run in threads) ---

    def _query_partition(self, pk: str) -> list[dict]:
        from boto3.dynamodb.conditions import Key

        table = self._get_table()
        kwargs = {"KeyConditionExpression": Key("pk").eq(pk)}
        items: list[dict] = []
        while True:
            resp = table.query(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _put(self, pk: str, sk: str, record: dict) -> None:
        self._get_table().put_item(Item={"pk": pk, "sk": sk, **record})

    def _delete(self, pk: str, sk: str) -> None:
        self._get_table().delete_item(Key={"pk": pk, "sk": sk})

    def _replace_partition(self, pk: str, blocks: list[PromptBlock]) -> None:
        """Swap a structure partition in one transaction: put new positions, delete stale ones."""
        from boto3.dynamodb.types import TypeSerializer

        serializer = TypeSerializer()

        def serialize(item: dict) -> dict:
            return {k: serializer.serialize(v) for k, v in item.items()}

        new_keys = {_position_key(b.position) for b in blocks}
        stale_keys = [
            item["sk"] for item in self._query_partition(pk) if item["sk"] not in new_keys
        ]

        actions = [
            {"Put": {
                "TableName": self._table_name,
                "Item": serialize({"pk": pk, "sk": _position_key(b.position), **b.to_dict()}),
            }}
            for b in blocks
        ]
        actions += [
            {"Delete": {
                "TableName": self._table_name,
                "Key": serialize({"pk": pk, "sk": sk}),
            }}
            for sk in stale_keys
        ]

        if not actions:
            return
        if len(actions) > self.MAX_TRANSACTION_ITEMS:
            raise ValueError(
                f"Structure change touches {len(actions)} items; "
                f"DynamoDB transactions allow at most {self.MAX_TRANSACTION_ITEMS}."
            )
        self._get_table().meta.client.transact_write_items(TransactItems=actions)

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex[:12]

    # --- Prompt structures ---

    async def _get_blocks(self, prefix: str, provider: str) -> list[PromptBlock]:
        items = await asyncio.to_thread(self._query_partition, f"{prefix}#{provider}")
        blocks = [PromptBlock.from_dict(_strip_keys(item)) for item in items]
        return sorted(blocks, key=lambda b: b.position)

    async def _set_blocks(self, prefix: str, provider: str, blocks: list[PromptBlock]) -> None:
        await asyncio.to_thread(
            self._replace_partition, f"{prefix}#{provider}", renumber(provider, blocks)
        )
        logger.info("Structure replaced", extra={"audit_data": {
            "section": prefix, "provider": provider, "block_count": len(blocks),
        }})

    async def get_structure(self, provider: str) -> list[PromptBlock]:
        return await self._get_blocks("structure", provider)

    async def set_structure(self, provider: str, blocks: list[PromptBlock]) -> None:
        await self._set_blocks("structure", provider, blocks)

    async def get_summarizer_structure(self, provider: str) -> list[PromptBlock]:
        return await self._get_blocks("summarizer", provider)

    async def set_summarizer_structure(self, provider: str, blocks: list[PromptBlock]) -> None:
        await self._set_blocks("summarizer", provider, blocks)

    # --- Commands ---

    async def get_commands(self, tags: Iterable[str] | None = None) -> list[CommandDefinition]:
        items = await asyncio.to_thread(self._query_partition, COMMAND_PK)
        commands = [CommandDefinition.from_dict(_strip_keys(item)) for item in items]
        if tags is not None:
            wanted = {t.upper() for t in tags}
            commands = [c for c in commands if c.command_tag in wanted]
        return sorted(commands, key=lambda c: c.command_tag)

    async def save_command(self, command: CommandDefinition) -> CommandDefinition:
        command = validate_command(command)
        for existing in await self.get_commands([command.command_tag]):
            if existing.id != command.id:
                raise ValueError(f"Command tag <{command.command_tag}> already exists.")
        if command.id is None:
            command.id = self._new_id()
        await asyncio.to_thread(self._put, COMMAND_PK, command.id, command.to_dict())
        return command

    async def delete_command(self, command_id: str) -> None:
        await asyncio.to_thread(self._delete, COMMAND_PK, command_id)

    # --- Custom providers ---

    async def get_custom_providers(self, enabled_only: bool = True) -> list[CustomProvider]:
        items = await asyncio.to_thread(self._query_partition, CUSTOM_PROVIDER_PK)
        providers = [CustomProvider.from_dict(_strip_keys(item)) for item in items]
        if enabled_only:
            providers = [p for p in providers if p.is_enabled]
        return sorted(providers, key=lambda p: p.display_name or p.provider_id)

    async def save_custom_provider(self, provider: CustomProvider) -> CustomProvider:
        for existing in await self.get_custom_providers(enabled_only=False):
            if existing.provider_id == provider.provider_id and existing.id != provider.id:
                raise ValueError(f"Provider id '{provider.provider_id}' already exists.")
        if provider.id is None:
            provider.id = self._new_id()
        await asyncio.to_thread(self._put, CUSTOM_PROVIDER_PK, provider.id, provider.to_dict())
        return provider

    async def delete_custom_provider(self, record_id: str) -> None:
        await asyncio.to_thread(self._delete, CUSTOM_PROVIDER_PK, record_id)

    # --- Caller tokens ---

    async def get_tokens(self) -> list[CallerToken]:
        items = await asyncio.to_thread(self._query_partition, TOKEN_PK)
        tokens = [CallerToken.from_dict(_strip_keys(item)) for item in items]
        return sorted(tokens, key=lambda t: t.name)

    async def save_token(self, token: CallerToken) -> CallerToken:
        now = utcnow()
        if token.id is None:
            token.id = self._new_id()
            token.created_at = now
        token.updated_at = now
        await asyncio.to_thread(self._put, TOKEN_PK, token.id, token.to_dict())
        return token

    async def delete_token(self, token_id: str) -> None:
        await asyncio.to_thread(self._delete, TOKEN_PK, token_id)

    # --- Request logs ---

    async def insert_log(self, entry: RequestLogEntry) -> None:
        entry.created_at = entry.created_at or utcnow()
        record = entry.to_dict()
        # Payloads hold floats (temperature, top_p) which DynamoDB rejects; keep them as JSON text
        record["request_payload"] = json.dumps(entry.request_payload, default=str)
        record["response_payload"] = json.dumps(entry.response_payload, default=str)
        await asyncio.to_thread(self._put, REQUEST_LOG_PK, entry.request_id, record)

    async def update_log(self, request_id: str, status_code: int, payload: dict | None) -> None:
        def _update():
            self._get_table().update_item(
                Key={"pk": REQUEST_LOG_PK, "sk": request_id},
                UpdateExpression="SET status_code = :s, response_payload = :p",
                ExpressionAttributeValues={
                    ":s": status_code,
                    ":p": json.dumps(payload, default=str),
                },
            )

        await asyncio.to_thread(_update)

    async def purge_logs(self, older_than: datetime) -> int:
        def _purge() -> int:
            stale = [
                item["sk"] for item in self._query_partition(REQUEST_LOG_PK)
                if item.get("created_at") and item["created_at"] < older_than.isoformat()
            ]
            with self._get_table().batch_writer() as batch:
                for sk in stale:
                    batch.delete_item(Key={"pk": REQUEST_LOG_PK, "sk": sk})
            return len(stale)

        return await asyncio.to_thread(_purge)
