import logging
import uuid
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import BotoCoreError, ClientError
from decimal import Decimal
from functools import reduce
from typing import Any

from foodbridge.core.exceptions import ConditionFailed, StoreError
from foodbridge.models.donation import ENTITY
from foodbridge.services.lifecycle import Guard, WritePlan

logger = logging.getLogger(__name__)

DONATION_PREFIX = "DONATION#"
DONATION_SK = "DONATION"
KEY_FIELDS = ("PK", "SK")
CONDITION_FAILED = "ConditionalCheckFailedException"

_deserializer = TypeDeserializer()


def _to_dynamo(value: Any) -> Any:
    # DynamoDB rejects Python floats
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value

def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value

def _to_document(item: dict) -> dict:
    return {k: _from_dynamo(v) for k, v in item.items() if k not in KEY_FIELDS}

def _guard_condition(guard: Guard):
    attr = Attr(guard.field)
    if guard.op == "eq":
        return attr.eq(guard.value)
    if guard.op == "in":
        return attr.is_in(list(guard.value))
    if guard.op == "gt":
        return attr.gt(guard.value)
    raise ValueError(f"Unknown guard operator: {guard.op}")


class DynamoDonationStore:
    def __init__(self, table, created_index: str = "DonationsByCreatedAt"):
        self.table = table
        self.created_index = created_index

    def _key(self, donation_id: str) -> dict:
        return {
            "PK": f"{DONATION_PREFIX}{donation_id}",
            "SK": DONATION_SK
        }

    def new_id(self) -> str:
        return str(uuid.uuid4())

    def put_new(self, document: dict) -> dict:
        donation_id = document["donation_id"]
        item = {**self._key(donation_id), **_to_dynamo(document)}

        try:
            self.table.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(PK)"
            )
            return document
        except ClientError as e:
            if e.response['Error']['Code'] == CONDITION_FAILED:
                logger.error(f"Donation id collision for {donation_id}")
            else:
                logger.error(f"Error creating donation {donation_id}: {e}")
            raise StoreError(donation_id=donation_id) from e
        except BotoCoreError as e:
            logger.error(f"Error creating donation {donation_id}: {e}")
            raise StoreError(donation_id=donation_id) from e

    def get(self, donation_id: str) -> dict | None:
        try:
            response = self.table.get_item(Key=self._key(donation_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading donation {donation_id}: {e}")
            raise StoreError(donation_id=donation_id) from e

        item = response.get("Item")
        return _to_document(item) if item else None

    def _condition(self, plan: WritePlan):
        clauses = [
            reduce(lambda a, b: a & b, (_guard_condition(g) for g in clause))
            for clause in plan.guards
        ]
        return reduce(lambda a, b: a | b, clauses)

    def _raise_write_error(self, e: Exception, donation_id: str):
        if isinstance(e, ClientError) and e.response['Error']['Code'] == CONDITION_FAILED:
            old_item = e.response.get("Item")
            if old_item:
                current = _to_document({k: _deserializer.deserialize(v) for k, v in old_item.items()})
            else:
                current = self.get(donation_id)
            raise ConditionFailed(current) from e

        logger.error(f"Error writing donation {donation_id}: {e}")
        raise StoreError(donation_id=donation_id) from e

    def conditional_update(self, donation_id: str, plan: WritePlan) -> dict:
        # "#n"/":v" placeholders are taken by the condition builder
        names, values, assignments = {}, {}, []
        for i, (field, value) in enumerate(sorted(plan.updates.items())):
            names[f"#u{i}"] = field
            values[f":u{i}"] = _to_dynamo(value)
            assignments.append(f"#u{i} = :u{i}")
        for i, (field, step) in enumerate(sorted(plan.increments.items())):
            names[f"#i{i}"] = field
            values[f":i{i}"] = step
            values[":zero"] = 0
            assignments.append(f"#i{i} = if_not_exists(#i{i}, :zero) + :i{i}")

        try:
            response = self.table.update_item(
                Key=self._key(donation_id),
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=self._condition(plan),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except (ClientError, BotoCoreError) as e:
            self._raise_write_error(e, donation_id)

        return _to_document(response.get("Attributes", {}))

    def conditional_delete(self, donation_id: str, plan: WritePlan) -> dict:
        try:
            response = self.table.delete_item(
                Key=self._key(donation_id),
                ConditionExpression=self._condition(plan),
                ReturnValues="ALL_OLD",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except (ClientError, BotoCoreError) as e:
            self._raise_write_error(e, donation_id)

        return _to_document(response.get("Attributes", {}))

    def list_all(self) -> list[dict]:
        query = {
            "IndexName": self.created_index,
            "KeyConditionExpression": Key("entity").eq(ENTITY),
            "ScanIndexForward": False,
        }
        items = []
        try:
            while True:
                response = self.table.query(**query)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                query["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error listing donations: {e}")
            raise StoreError() from e

        return [_to_document(item) for item in items]
