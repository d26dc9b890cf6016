"""
tests/test_database.py

DynamoDB / S3 paths, with boto3 replaced by MagicMock.
"""
from __future__ import annotations

import io
from decimal import Decimal
from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from botocore.exceptions import ClientError

from fastapi.testclient import TestClient

from diary_sync.auth import ApiKeyAuthenticator
from diary_sync.database import (
    INLINE_BLOB_MAX_BYTES,
    TRANSACT_MAX_ITEMS,
    BlobTooLargeError,
    StorageError,
    SyncDatabase,
    TransactionLimitError,
    entity_key,
)
from diary_sync.models import DiarySyncItem, EncryptedBlob, SyncUploadRequest
from diary_sync.main import app, get_db
from diary_sync.sync import apply_upload


# ───────────────────────── helpers ────────────────────────────────────
def _client_error(code: str, operation: str = "TransactWriteItems") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _diary(uuid: str = "d1", data: str = "cipher") -> DiarySyncItem:
    return DiarySyncItem(
        uuid=uuid,
        author="a",
        timestamp=1,
        updated_at=2,
        payload=EncryptedBlob(iv="iv", data=data),
    )


@pytest.fixture
def aws():
    """Patch boto3 inside the database module; yields (table, dynamo client, s3 client)."""
    with patch("diary_sync.database.boto3") as mock_boto3:
        resource = MagicMock()
        table = MagicMock()
        dynamo_client = MagicMock()
        s3_client = MagicMock()
        resource.Table.return_value = table
        resource.meta.client = dynamo_client
        mock_boto3.resource.return_value = resource
        mock_boto3.client.return_value = s3_client
        yield table, dynamo_client, s3_client


def _put_items(dynamo_client) -> list:
    (call,) = dynamo_client.transact_write_items.call_args_list
    return [action["Put"]["Item"] for action in call.kwargs["TransactItems"]]


# ───────────────────────── tests ──────────────────────────────────────
def test_falls_back_to_memory_when_table_missing():
    with patch("diary_sync.database.boto3") as mock_boto3:
        table = mock_boto3.resource.return_value.Table.return_value
        type(table).table_status = PropertyMock(
            side_effect=_client_error("ResourceNotFoundException", "DescribeTable")
        )
        db = SyncDatabase("missing", image_bucket="bucket")

    assert db.in_memory
    assert db.s3_client is None


def test_transaction_writes_one_transact_call(aws):
    table, dynamo_client, s3_client = aws
    db = SyncDatabase("diary_sync")
    assert not db.in_memory

    with db.transaction() as tx:
        tx.put_diary(_diary())

    items = _put_items(dynamo_client)
    assert items == [
        {
            "entity_key": {"S": "diary#d1"},
            "kind": {"S": "diary"},
            "uuid": {"S": "d1"},
            "author": {"S": "a"},
            "timestamp": {"N": "1"},
            "updated_at": {"N": "2"},
            "payload_iv": {"S": "iv"},
            "payload_data": {"S": "cipher"},
        }
    ]
    call = dynamo_client.transact_write_items.call_args
    assert call.kwargs["TransactItems"][0]["Put"]["TableName"] == "diary_sync"
    s3_client.put_object.assert_not_called()


def test_duplicate_keys_collapse_to_last_write(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with db.transaction() as tx:
        tx.put_diary(_diary(data="first"))
        tx.put_diary(_diary(data="second"))

    items = _put_items(dynamo_client)
    assert len(items) == 1
    assert items[0]["payload_data"] == {"S": "second"}


def test_empty_transaction_does_not_call_dynamodb(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")
    with db.transaction():
        pass
    dynamo_client.transact_write_items.assert_not_called()


def test_exception_in_block_commits_nothing(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            tx.put_diary(_diary())
            raise RuntimeError("abort")

    dynamo_client.transact_write_items.assert_not_called()


def test_transaction_limit(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with pytest.raises(TransactionLimitError):
        with db.transaction() as tx:
            for i in range(TRANSACT_MAX_ITEMS + 1):
                tx.put_diary(_diary(uuid=f"d{i}"))

    dynamo_client.transact_write_items.assert_not_called()


def test_transaction_limit_counts_distinct_keys(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with db.transaction() as tx:
        for _ in range(TRANSACT_MAX_ITEMS + 10):
            tx.put_diary(_diary())

    assert len(_put_items(dynamo_client)) == 1


def test_commit_failure_becomes_storage_error(aws):
    _, dynamo_client, _ = aws
    dynamo_client.transact_write_items.side_effect = _client_error("TransactionCanceledException")
    db = SyncDatabase("diary_sync")

    with pytest.raises(StorageError) as excinfo:
        apply_upload(db, SyncUploadRequest(diaries=[_diary()]))
    assert str(excinfo.value).startswith("commit failed")


def test_image_blob_goes_to_s3_before_table(aws):
    _, dynamo_client, s3_client = aws
    calls = []
    s3_client.put_object.side_effect = lambda **kw: calls.append("s3")
    dynamo_client.transact_write_items.side_effect = lambda **kw: calls.append("dynamodb")
    db = SyncDatabase("diary_sync", image_bucket="images-bucket")

    with db.transaction() as tx:
        tx.put_image_blob("abc", EncryptedBlob(iv="iv", data="pixels"), 5)
        tx.put_image_ref("d1", "a.jpg", "abc", 5)

    assert calls == ["s3", "dynamodb"]
    s3_client.put_object.assert_called_once_with(
        Bucket="images-bucket",
        Key="images/abc",
        Body=b"pixels",
        ContentType="text/plain",
    )
    blob_item, ref_item = _put_items(dynamo_client)
    assert blob_item["s3_key"] == {"S": "images/abc"}
    assert "blob_data" not in blob_item
    assert ref_item["entity_key"] == {"S": "image_ref#d1#a.jpg"}


def test_s3_failure_skips_table_write(aws):
    _, dynamo_client, s3_client = aws
    s3_client.put_object.side_effect = _client_error("SlowDown", "PutObject")
    db = SyncDatabase("diary_sync", image_bucket="images-bucket")

    with pytest.raises(StorageError):
        with db.transaction() as tx:
            tx.put_image_blob("abc", EncryptedBlob(iv="iv", data="pixels"), 5)

    dynamo_client.transact_write_items.assert_not_called()


def test_inline_blob_without_bucket(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with db.transaction() as tx:
        tx.put_image_blob("abc", EncryptedBlob(iv="iv", data="pixels"), 5)

    (blob_item,) = _put_items(dynamo_client)
    assert blob_item["blob_data"] == {"S": "pixels"}


def test_scan_paginates_and_normalizes(aws):
    table, _, _ = aws
    table.scan.side_effect = [
        {"Items": [{"uuid": "d1", "updated_at": Decimal("10")}], "LastEvaluatedKey": {"entity_key": "diary#d1"}},
        {"Items": [{"uuid": "d2", "updated_at": Decimal("20")}]},
    ]
    db = SyncDatabase("diary_sync")

    items = db.scan("diary", ["uuid", "updated_at"])

    assert items == [{"uuid": "d1", "updated_at": 10}, {"uuid": "d2", "updated_at": 20}]
    assert all(isinstance(item["updated_at"], int) for item in items)
    first, second = table.scan.call_args_list
    assert "ExclusiveStartKey" not in first.kwargs
    assert second.kwargs["ExclusiveStartKey"] == {"entity_key": "diary#d1"}
    assert first.kwargs["ProjectionExpression"] == "#a0, #a1"
    assert first.kwargs["ExpressionAttributeNames"]["#a0"] == "uuid"


def test_scan_failure_names_the_kind(aws):
    table, _, _ = aws
    table.scan.side_effect = _client_error("ProvisionedThroughputExceededException", "Scan")
    db = SyncDatabase("diary_sync")

    with pytest.raises(StorageError) as excinfo:
        db.scan("todo")
    assert str(excinfo.value).startswith("todo query failed")


def test_get_item_missing(aws):
    table, _, _ = aws
    table.get_item.return_value = {}
    db = SyncDatabase("diary_sync")

    assert db.get_item(entity_key("image", "nope")) is None
    table.get_item.assert_called_once_with(Key={"entity_key": "image#nope"}, ConsistentRead=True)


def test_get_image_data_from_s3(aws):
    _, _, s3_client = aws
    s3_client.get_object.return_value = {"Body": io.BytesIO(b"pixels")}
    db = SyncDatabase("diary_sync", image_bucket="images-bucket")

    assert db.get_image_data({"s3_key": "images/abc"}) == "pixels"
    s3_client.get_object.assert_called_once_with(Bucket="images-bucket", Key="images/abc")


def test_get_image_data_missing_object(aws):
    _, _, s3_client = aws
    s3_client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
    db = SyncDatabase("diary_sync", image_bucket="images-bucket")

    assert db.get_image_data({"s3_key": "images/abc"}) is None


def test_get_image_data_inline():
    db = SyncDatabase("diary_sync", use_in_memory=True)
    assert db.get_image_data({"blob_data": "pixels"}) == "pixels"
    assert db.get_image_data({"s3_key": "images/abc"}) is None


def test_reads_are_strongly_consistent(aws):
    table, _, _ = aws
    table.scan.side_effect = [
        {"Items": [], "LastEvaluatedKey": {"entity_key": "diary#d1"}},
        {"Items": []},
    ]
    table.get_item.return_value = {}
    db = SyncDatabase("diary_sync")

    db.scan("diary")
    db.get_item(entity_key("diary", "d1"))

    assert all(call.kwargs["ConsistentRead"] is True for call in table.scan.call_args_list)
    assert table.get_item.call_args.kwargs["ConsistentRead"] is True


def test_oversized_inline_blob_rejected_before_commit(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with pytest.raises(BlobTooLargeError) as excinfo:
        with db.transaction() as tx:
            tx.put_image_blob("big", EncryptedBlob(iv="iv", data="x" * 1_000_000), 5)

    assert "big" in str(excinfo.value)
    assert isinstance(excinfo.value, TransactionLimitError)
    dynamo_client.transact_write_items.assert_not_called()


def test_inline_blobs_over_transaction_size_rejected(aws):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")

    with pytest.raises(BlobTooLargeError):
        with db.transaction() as tx:
            for i in range(13):
                tx.put_image_blob(f"h{i}", EncryptedBlob(iv="iv", data="x" * INLINE_BLOB_MAX_BYTES), 5)

    dynamo_client.transact_write_items.assert_not_called()


def test_large_blob_goes_to_s3_when_bucket_configured(aws):
    _, dynamo_client, s3_client = aws
    db = SyncDatabase("diary_sync", image_bucket="images-bucket")

    with db.transaction() as tx:
        tx.put_image_blob("big", EncryptedBlob(iv="iv", data="x" * 1_000_000), 5)

    s3_client.put_object.assert_called_once()
    (blob_item,) = _put_items(dynamo_client)
    assert "blob_data" not in blob_item


def test_in_memory_store_keeps_large_inline_blob():
    db = SyncDatabase("diary_sync", use_in_memory=True)

    with db.transaction() as tx:
        tx.put_image_blob("big", EncryptedBlob(iv="iv", data="x" * 1_000_000), 5)

    (item,) = db.scan("image")
    assert len(db.get_image_data(item)) == 1_000_000


@pytest.mark.parametrize("path", ["/sync/upload", "/images/upload"])
def test_oversized_image_without_bucket_is_client_error(aws, path):
    _, dynamo_client, _ = aws
    db = SyncDatabase("diary_sync")
    image = {
        "fileName": "a.jpg",
        "diaryUuid": "d1",
        "hash": "big",
        "updatedAt": 1,
        "blob": {"iv": "iv", "data": "x" * 1_000_000},
    }

    saved_authenticator = app.state.authenticator
    app.state.authenticator = ApiKeyAuthenticator("")
    app.dependency_overrides[get_db] = lambda: db
    try:
        with TestClient(app) as c:
            rv = c.post(path, json={"images": [image]})
    finally:
        app.dependency_overrides.clear()
        app.state.authenticator = saved_authenticator

    assert rv.status_code == 400
    assert "too large" in rv.text
    if path == "/sync/upload":
        assert rv.json()["counts"] == {"diaries": 0, "todos": 0, "periods": 0, "images": 0}
    dynamo_client.transact_write_items.assert_not_called()
