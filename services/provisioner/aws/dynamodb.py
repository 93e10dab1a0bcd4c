"""DataStore -> DynamoDB table."""
from __future__ import annotations

from typing import Any

from provisioner.descriptors import ResourceKind
from provisioner.environment import ResourceHandler
from provisioner.errors import ProvisioningFailure


def _key_schema(partition_key: str, sort_key: str | None) -> list[dict]:
    schema = [{"AttributeName": partition_key, "KeyType": "HASH"}]
    if sort_key:
        schema.append({"AttributeName": sort_key, "KeyType": "RANGE"})
    return schema


def _index_spec(index: dict, provisioned: bool) -> dict:
    spec = {
        "IndexName": index["name"],
        "KeySchema": _key_schema(index["partitionKey"], index.get("sortKey")),
        "Projection": {"ProjectionType": "ALL"},
    }
    if provisioned:
        spec["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
    return spec


def _attribute_definitions(inputs: dict) -> list[dict]:
    names: list[str] = []
    for name in (inputs["partitionKey"], inputs.get("sortKey")):
        if name and name not in names:
            names.append(name)
    for index in inputs.get("indexes") or []:
        for name in (index["partitionKey"], index.get("sortKey")):
            if name and name not in names:
                names.append(name)
    return [{"AttributeName": n, "AttributeType": "S"} for n in names]


class TableHandler(ResourceHandler):
    kind = ResourceKind.DATA_STORE

    @property
    def client(self):
        return self.environment.client("dynamodb")

    def _describe(self, table_name: str) -> dict | None:
        try:
            return self.client.describe_table(TableName=table_name)["Table"]
        except self.client.exceptions.ResourceNotFoundException:
            return None

    @staticmethod
    def _outputs(table: dict) -> dict[str, Any]:
        return {"tableName": table["TableName"], "tableArn": table["TableArn"]}

    def lookup(self, logical_id, inputs):
        table = self._describe(inputs["tableName"])
        return self._outputs(table) if table else None

    def create(self, logical_id, inputs):
        provisioned = inputs.get("billingMode", "PAY_PER_REQUEST") == "PROVISIONED"
        kwargs: dict[str, Any] = {
            "TableName": inputs["tableName"],
            "KeySchema": _key_schema(inputs["partitionKey"], inputs.get("sortKey")),
            "AttributeDefinitions": _attribute_definitions(inputs),
        }
        if provisioned:
            kwargs["BillingMode"] = "PROVISIONED"
            kwargs["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
        else:
            kwargs["BillingMode"] = "PAY_PER_REQUEST"
        indexes = inputs.get("indexes") or []
        if indexes:
            kwargs["GlobalSecondaryIndexes"] = [_index_spec(i, provisioned) for i in indexes]

        table = self.client.create_table(**kwargs)["TableDescription"]
        self.client.get_waiter("table_exists").wait(TableName=inputs["tableName"])
        return self._outputs(table)

    def update(self, logical_id, inputs, current):
        table = self._describe(inputs["tableName"])
        wanted = _key_schema(inputs["partitionKey"], inputs.get("sortKey"))
        if table["KeySchema"] != wanted:
            raise ProvisioningFailure(
                f"Table {inputs['tableName']} exists with key schema {table['KeySchema']}; "
                f"the key schema of a table cannot change",
                logical_id,
            )

        provisioned = inputs.get("billingMode", "PAY_PER_REQUEST") == "PROVISIONED"
        existing = {i["IndexName"] for i in table.get("GlobalSecondaryIndexes", [])}
        # one index creation per UpdateTable call
        for index in inputs.get("indexes") or []:
            if index["name"] in existing:
                continue
            self.client.update_table(
                TableName=inputs["tableName"],
                AttributeDefinitions=_attribute_definitions(inputs),
                GlobalSecondaryIndexUpdates=[{"Create": _index_spec(index, provisioned)}],
            )
            self.client.get_waiter("table_exists").wait(TableName=inputs["tableName"])
        return self._outputs(table)

    def delete(self, logical_id, inputs, current):
        self.client.delete_table(TableName=inputs["tableName"])
        self.client.get_waiter("table_not_exists").wait(TableName=inputs["tableName"])
