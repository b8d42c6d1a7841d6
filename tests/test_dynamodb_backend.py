from __future__ import annotations

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from userauth import dynamodb
from userauth.backend import Condition
from userauth.dynamodb import DynamoDbBackend, DynamoDbIdGenerator
from userauth.errors import ConditionFailed, UnprocessedWrites


@pytest.fixture
def client():
    return boto3.client(
        "dynamodb",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubber(client):
    with Stubber(client) as s:
        yield s
        s.assert_no_pending_responses()


@pytest.fixture
def dynamo(client, tables):
    return DynamoDbBackend(client, tables)


def test_reservation_put_requires_absent_key(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "put_item",
        {},
        {
            "TableName": tables.email_mapping_table,
            "Item": {"Email": {"S": "tom@example.org"}, "Id": {"N": "3"}},
            "ConditionExpression": "attribute_not_exists(#k)",
            "ExpressionAttributeNames": {"#k": "Email"},
        },
    )

    dynamo.conditional_put(tables.email_mapping_table, {"Email": "tom@example.org", "Id": 3}, Condition.key_absent())


def test_owned_by_put_compares_owner_attribute(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "put_item",
        {},
        {
            "TableName": tables.user_auth_table,
            "Item": {"Id": {"N": "3"}, "UserName": {"S": "tom"}},
            "ConditionExpression": "#o = :owner",
            "ExpressionAttributeNames": {"#o": "Id"},
            "ExpressionAttributeValues": {":owner": {"N": "3"}},
        },
    )

    dynamo.conditional_put(tables.user_auth_table, {"Id": 3, "UserName": "tom", "Email": None}, Condition.owned_by(3))


def test_rejected_condition_becomes_condition_failed(dynamo, stubber, tables) -> None:
    stubber.add_client_error("put_item", service_error_code="ConditionalCheckFailedException", http_status_code=400)

    with pytest.raises(ConditionFailed) as exc:
        dynamo.conditional_put(tables.user_name_mapping_table, {"UserName": "tom", "Id": 1}, Condition.key_absent())

    assert exc.value.table == tables.user_name_mapping_table
    assert exc.value.key == "tom"


def test_other_client_errors_propagate(dynamo, stubber, tables) -> None:
    stubber.add_client_error(
        "put_item", service_error_code="ProvisionedThroughputExceededException", http_status_code=400
    )

    with pytest.raises(ClientError):
        dynamo.conditional_put(tables.user_name_mapping_table, {"UserName": "tom", "Id": 1}, Condition.key_absent())


def test_get_is_consistent_and_unmarshals(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "get_item",
        {"Item": {"UserName": {"S": "tom"}, "Id": {"N": "7"}}},
        {"TableName": tables.user_name_mapping_table, "Key": {"UserName": {"S": "tom"}}, "ConsistentRead": True},
    )
    stubber.add_response(
        "get_item",
        {},
        {"TableName": tables.user_name_mapping_table, "Key": {"UserName": {"S": "bob"}}, "ConsistentRead": True},
    )

    item = dynamo.get(tables.user_name_mapping_table, {"UserName": "tom", "Id": 7})
    assert item["UserName"] == "tom"
    assert int(item["Id"]) == 7
    assert dynamo.get(tables.user_name_mapping_table, {"UserName": "bob"}) is None


def test_delete_uses_key_attributes_only(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "delete_item",
        {},
        {"TableName": tables.user_auth_details_table, "Key": {"UserAuthId": {"N": "1"}, "Provider": {"S": "github"}}},
    )

    dynamo.delete(tables.user_auth_details_table, {"UserAuthId": 1, "Provider": "github", "AccessToken": "x"})


def _delete_request(i: int):
    return {"DeleteRequest": {"Key": {"UserAuthId": {"N": "1"}, "Provider": {"S": "p%d" % i}}}}


def test_delete_many_batches_and_retries_unprocessed(dynamo, stubber, tables, monkeypatch) -> None:
    delays = []
    monkeypatch.setattr(dynamodb.time, "sleep", delays.append)
    table = tables.user_auth_details_table
    keys = [{"UserAuthId": 1, "Provider": "p%d" % i} for i in range(30)]

    first = [_delete_request(i) for i in range(25)]
    stubber.add_response(
        "batch_write_item",
        {"UnprocessedItems": {table: first[-1:]}},
        {"RequestItems": {table: first}},
    )
    stubber.add_response("batch_write_item", {"UnprocessedItems": {}}, {"RequestItems": {table: first[-1:]}})
    stubber.add_response(
        "batch_write_item",
        {"UnprocessedItems": {}},
        {"RequestItems": {table: [_delete_request(i) for i in range(25, 30)]}},
    )

    dynamo.delete_many(table, keys)

    assert delays == [0.05]


def test_delete_many_gives_up_after_max_attempts(client, stubber, tables, monkeypatch) -> None:
    delays = []
    monkeypatch.setattr(dynamodb.time, "sleep", delays.append)
    table = tables.user_auth_details_table
    dynamo = DynamoDbBackend(client, tables, max_batch_attempts=3, backoff_seconds=0.1)
    batch = [_delete_request(0), _delete_request(1)]

    for _ in range(3):
        stubber.add_response(
            "batch_write_item", {"UnprocessedItems": {table: batch}}, {"RequestItems": {table: batch}}
        )

    with pytest.raises(UnprocessedWrites) as exc:
        dynamo.delete_many(table, [{"UserAuthId": 1, "Provider": "p0"}, {"UserAuthId": 1, "Provider": "p1"}])

    assert exc.value.remaining == 2
    assert exc.value.attempts == 3
    assert delays == [0.1, 0.2]


def test_table_query_is_consistent(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "query",
        {"Items": [{"UserAuthId": {"N": "1"}, "Provider": {"S": "github"}}]},
        {
            "TableName": tables.user_auth_details_table,
            "KeyConditionExpression": "#f = :v",
            "ExpressionAttributeNames": {"#f": "UserAuthId"},
            "ExpressionAttributeValues": {":v": {"N": "1"}},
            "ConsistentRead": True,
        },
    )

    [item] = dynamo.query(tables.user_auth_details_table, "UserAuthId", 1)
    assert item["Provider"] == "github"


def test_secondary_index_query_names_the_index(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "query",
        {"Items": [{"Id": {"N": "4"}, "Email": {"S": "tom@example.org"}}]},
        {
            "TableName": tables.user_auth_table,
            "IndexName": tables.email_index,
            "KeyConditionExpression": "#f = :v",
            "ExpressionAttributeNames": {"#f": "Email"},
            "ExpressionAttributeValues": {":v": {"S": "tom@example.org"}},
        },
    )

    [item] = dynamo.query(tables.user_auth_table, "Email", "tom@example.org", index=tables.email_index)
    assert int(item["Id"]) == 4


def test_id_generator_increments_counter_item(client, stubber, tables) -> None:
    stubber.add_response(
        "update_item",
        {"Attributes": {"Counter": {"N": "12"}}},
        {
            "TableName": tables.user_auth_table,
            "Key": {"Id": {"N": "0"}},
            "UpdateExpression": "ADD #c :one",
            "ExpressionAttributeNames": {"#c": "Counter"},
            "ExpressionAttributeValues": {":one": {"N": "1"}},
            "ReturnValues": "UPDATED_NEW",
        },
    )

    assert DynamoDbIdGenerator(client, tables).next() == 12


def test_provision_skips_existing_tables(dynamo, stubber, tables) -> None:
    stubber.add_response(
        "describe_table",
        {"Table": {"TableName": tables.user_auth_table, "TableStatus": "ACTIVE"}},
        {"TableName": tables.user_auth_table},
    )

    assert dynamo.provision() is False
