"""
DynamoDB / S3 によるエンティティストア

1 テーブルに全エンティティを格納する。パーティションキー entity_key は
"<kind>#<自然キー>" 形式（例: "diary#<uuid>", "image_ref#<diary_uuid>#<file_name>"）。
"""
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterator, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from .models import DiarySyncItem, EncryptedBlob, PeriodSyncItem, TodoSyncItem


KIND_DIARY = "diary"
KIND_TODO = "todo"
KIND_PERIOD = "period"
KIND_IMAGE = "image"
KIND_IMAGE_REF = "image_ref"

# TransactWriteItems の 1 トランザクションあたりの上限
TRANSACT_MAX_ITEMS = 100
TRANSACT_MAX_BYTES = 4 * 1024 * 1024

# テーブルに直接置く画像暗号文の上限（アイテム上限 400KB から属性分を引いた値）
INLINE_BLOB_MAX_BYTES = 350 * 1024

IMAGE_KEY_PREFIX = "images/"

_serializer = TypeSerializer()


class StorageError(Exception):
    """ストレージ障害（接続・クエリ・コミットの失敗）"""
    pass


class TransactionLimitError(StorageError):
    """1 トランザクションに収まらない書き込み件数"""
    pass


class BlobTooLargeError(TransactionLimitError):
    """テーブルに直接格納できない大きさの画像ブロブ"""
    pass


def entity_key(kind: str, *parts: str) -> str:
    """パーティションキーを組み立てる"""
    return "#".join((kind,) + parts)


def _normalize(item: dict) -> dict:
    """DynamoDB の Decimal を int に戻す"""
    return {
        key: int(value) if isinstance(value, Decimal) else value
        for key, value in item.items()
    }


def _serialize(item: dict) -> dict:
    return {key: _serializer.serialize(value) for key, value in item.items()}


class SyncTransaction:
    """
    アトミックな書き込み単位

    put_* はステージングのみ行い、コミットはストア側で一括実行する。
    同じキーへの 2 回目以降の書き込みは前の書き込みを置き換える（後勝ち）。
    """

    def __init__(self, inline_blobs: bool = True, max_inline_bytes: Optional[int] = None):
        self.inline_blobs = inline_blobs
        self.max_inline_bytes = max_inline_bytes
        self.items: Dict[str, dict] = {}
        # S3 に置く画像本体（オブジェクトキー → 暗号文）
        self.objects: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.items)

    def inline_bytes(self) -> int:
        """テーブルに直接置く画像暗号文の合計バイト数"""
        return sum(
            len(item["blob_data"].encode("utf-8"))
            for item in self.items.values()
            if "blob_data" in item
        )

    def _put(self, kind: str, key_parts: tuple, attrs: dict) -> dict:
        key = entity_key(kind, *key_parts)
        item = {"entity_key": key, "kind": kind, **attrs}
        self.items[key] = item
        return item

    def put_diary(self, item: DiarySyncItem) -> dict:
        return self._put(KIND_DIARY, (item.uuid,), {
            "uuid": item.uuid,
            "author": item.author,
            "timestamp": item.timestamp,
            "updated_at": item.updated_at,
            "payload_iv": item.payload.iv,
            "payload_data": item.payload.data,
        })

    def put_todo(self, item: TodoSyncItem) -> dict:
        attrs = {
            "uuid": item.uuid,
            "author": item.author,
            "is_completed": item.is_completed,
            "created_at": item.created_at,
            "updated_at": item.updated_at,
            "payload_iv": item.payload.iv,
            "payload_data": item.payload.data,
        }
        if item.completed_at is not None:
            attrs["completed_at"] = item.completed_at
        return self._put(KIND_TODO, (item.uuid,), attrs)

    def put_period(self, item: PeriodSyncItem) -> dict:
        return self._put(KIND_PERIOD, (item.start_date,), {
            "start_date": item.start_date,
            "end_date": item.end_date,
            "updated_at": item.updated_at,
            "payload_iv": item.payload.iv,
            "payload_data": item.payload.data,
        })

    def put_image_blob(self, hash_: str, blob: EncryptedBlob, updated_at: int) -> dict:
        attrs = {
            "hash": hash_,
            "blob_iv": blob.iv,
            "updated_at": updated_at,
        }
        if self.inline_blobs:
            size = len(blob.data.encode("utf-8"))
            if self.max_inline_bytes is not None and size > self.max_inline_bytes:
                raise BlobTooLargeError(
                    f"image {hash_} too large: {size} bytes (max {self.max_inline_bytes} without an image bucket)"
                )
            attrs["blob_data"] = blob.data
        else:
            s3_key = f"{IMAGE_KEY_PREFIX}{hash_}"
            attrs["s3_key"] = s3_key
            self.objects[s3_key] = blob.data
        return self._put(KIND_IMAGE, (hash_,), attrs)

    def put_image_ref(
        self,
        diary_uuid: str,
        file_name: str,
        hash_: str,
        updated_at: int,
    ) -> dict:
        return self._put(KIND_IMAGE_REF, (diary_uuid, file_name), {
            "diary_uuid": diary_uuid,
            "file_name": file_name,
            "hash": hash_,
            "updated_at": updated_at,
        })


class InMemoryDatabase:
    """開発モード・テスト用のメモリ内データベース"""

    def __init__(self):
        self.data: Dict[str, dict] = {}
        self._lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[SyncTransaction]:
        tx = SyncTransaction(inline_blobs=True)
        yield tx
        self.commit(tx)

    def commit(self, tx: SyncTransaction) -> None:
        with self._lock:
            for key, item in tx.items.items():
                self.data[key] = dict(item)

    def scan(self, kind: str, attributes: Optional[List[str]] = None) -> List[dict]:
        with self._lock:
            items = [dict(item) for item in self.data.values() if item["kind"] == kind]
        if attributes:
            items = [{k: item[k] for k in attributes if k in item} for item in items]
        return items

    def get_item(self, key: str) -> Optional[dict]:
        with self._lock:
            item = self.data.get(key)
        return dict(item) if item is not None else None


class SyncDatabase:
    """DynamoDB テーブル操作クラス"""

    def __init__(
        self,
        table_name: str,
        image_bucket: Optional[str] = None,
        use_in_memory: bool = False,
    ):
        """
        DynamoDB テーブルと S3 バケットを初期化

        Args:
            table_name: DynamoDB テーブル名
            image_bucket: S3 バケット名（画像の暗号文保存用、なければテーブルに直接格納）
            use_in_memory: True ならメモリ内データベースを使う
        """
        self.table_name = table_name
        self.table = None
        self.client = None

        # 開発モード判定: AWS 認証情報がない、またはテーブルが存在しない場合
        if not use_in_memory:
            try:
                dynamodb = boto3.resource("dynamodb")
                self.table = dynamodb.Table(table_name)
                # テーブル存在確認
                self.table.table_status
                self.client = dynamodb.meta.client
            except Exception as e:
                logger.warning(f"DynamoDB table '{table_name}' unavailable, using in-memory store: {e}")
                use_in_memory = True

        if use_in_memory:
            self._in_memory = InMemoryDatabase()
        else:
            self._in_memory = None

        # S3 クライアント
        self.image_bucket = image_bucket or None
        if self.image_bucket and not self._in_memory:
            self.s3_client = boto3.client("s3")
        else:
            self.s3_client = None

    @property
    def in_memory(self) -> bool:
        return self._in_memory is not None

    @contextmanager
    def transaction(self) -> Iterator[SyncTransaction]:
        """
        アトミックな書き込み単位を開始する

        with ブロックが例外なく終了した場合のみコミットする。
        ブロック内で例外が起きた場合は何も書き込まない。

        Raises:
            TransactionLimitError: 書き込み件数が TRANSACT_MAX_ITEMS を超えた場合
            BlobTooLargeError: バケットなしで画像ブロブがアイテム・トランザクション上限を超えた場合
            StorageError: コミットに失敗した場合
        """
        if self._in_memory:
            with self._in_memory.transaction() as tx:
                yield tx
            return

        if self.s3_client is None:
            tx = SyncTransaction(inline_blobs=True, max_inline_bytes=INLINE_BLOB_MAX_BYTES)
        else:
            tx = SyncTransaction(inline_blobs=False)
        yield tx
        self._commit(tx)

    def _commit(self, tx: SyncTransaction) -> None:
        if not tx.items:
            return
        if len(tx) > TRANSACT_MAX_ITEMS:
            raise TransactionLimitError(
                f"batch too large: {len(tx)} writes (max {TRANSACT_MAX_ITEMS})"
            )
        inline_bytes = tx.inline_bytes()
        if inline_bytes > TRANSACT_MAX_BYTES:
            raise BlobTooLargeError(
                f"batch too large: {inline_bytes} bytes of inline images (max {TRANSACT_MAX_BYTES})"
            )

        try:
            # 画像本体を先に S3 へ（テーブル側が失敗しても参照されないだけ）
            for s3_key, data in tx.objects.items():
                self.s3_client.put_object(
                    Bucket=self.image_bucket,
                    Key=s3_key,
                    Body=data.encode("utf-8"),
                    ContentType="text/plain",
                )

            self.client.transact_write_items(
                TransactItems=[
                    {"Put": {"TableName": self.table_name, "Item": _serialize(item)}}
                    for item in tx.items.values()
                ]
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"commit failed: {e}") from e

    def scan(self, kind: str, attributes: Optional[List[str]] = None) -> List[dict]:
        """
        指定種別の全アイテムを取得

        Args:
            kind: エンティティ種別（KIND_*）
            attributes: 取得する属性名（省略時は全属性）

        Returns:
            アイテムリスト

        Raises:
            StorageError: スキャンに失敗した場合
        """
        if self._in_memory:
            return self._in_memory.scan(kind, attributes)

        # 直前のコミットを必ず読むため強い整合性で読む
        kwargs = {"FilterExpression": Attr("kind").eq(kind), "ConsistentRead": True}
        if attributes:
            # "hash" は予約語なので名前はすべてプレースホルダ経由
            names = {f"#a{i}": name for i, name in enumerate(attributes)}
            kwargs["ProjectionExpression"] = ", ".join(names)
            kwargs["ExpressionAttributeNames"] = names

        items = []
        try:
            while True:
                response = self.table.scan(**kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"{kind} query failed: {e}") from e

        return [_normalize(item) for item in items]

    def get_item(self, key: str) -> Optional[dict]:
        """
        キーでアイテムを取得

        Returns:
            アイテム、見つからない場合は None
        """
        if self._in_memory:
            return self._in_memory.get_item(key)

        try:
            response = self.table.get_item(Key={"entity_key": key}, ConsistentRead=True)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"lookup failed: {e}") from e

        item = response.get("Item")
        return _normalize(item) if item is not None else None

    def get_image_data(self, item: dict) -> Optional[str]:
        """
        画像ブロブの暗号文を取得（S3 に置かれていれば S3 から読む）

        Returns:
            暗号文、S3 にオブジェクトがない場合は None
        """
        if "blob_data" in item:
            return item["blob_data"]

        s3_key = item.get("s3_key")
        if not s3_key or not self.s3_client:
            return None

        try:
            response = self.s3_client.get_object(Bucket=self.image_bucket, Key=s3_key)
            return response["Body"].read().decode("utf-8")
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise StorageError(f"image object read failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"image object read failed: {e}") from e
