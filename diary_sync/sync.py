"""
同期処理（アップロードの一括反映・差分ダウンロード・メタ情報）

競合解決は updated_at の比較のみ。サーバーは時刻を生成も検証もせず、
同じキーへの同時アップロードはコミット順で後勝ちになる。
"""
import re
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List

from loguru import logger

from .database import (
    KIND_DIARY,
    KIND_PERIOD,
    KIND_TODO,
    StorageError,
    SyncDatabase,
)
from .models import (
    DiarySyncItem,
    EncryptedBlob,
    PeriodMeta,
    PeriodSyncItem,
    SyncCounts,
    SyncDownloadEnvelope,
    SyncDownloadRequest,
    SyncDownloadResponse,
    SyncMeta,
    SyncMetaResponse,
    SyncUploadRequest,
    TodoSyncItem,
)


_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MalformedInputError(ValueError):
    """クライアント起因の不正な入力"""
    pass


def parse_period_date(value: str) -> date:
    """
    YYYY-MM-DD 形式の日付を検証する

    Raises:
        MalformedInputError: 形式が違う、または実在しない日付の場合
    """
    if not _DATE_RE.match(value):
        raise MalformedInputError(f"invalid date '{value}': expected YYYY-MM-DD")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise MalformedInputError(f"invalid date '{value}': {e}") from e


def _stage(phase: str, put: Callable, items: Iterable) -> None:
    """各アイテムをステージングし、失敗したらフェーズ名付きで再送出する"""
    for item in items:
        try:
            put(item)
        except MalformedInputError as e:
            raise MalformedInputError(f"{phase} failed: {e}") from e
        except StorageError as e:
            # TransactionLimitError などの種別はそのまま残す
            raise type(e)(f"{phase} failed: {e}") from e


def apply_upload(db: SyncDatabase, request: SyncUploadRequest) -> SyncCounts:
    """
    アップロードされたバッチを 1 トランザクションで反映する

    すべて成功するか、何も反映されないかのどちらか。

    Args:
        db: エンティティストア
        request: 日記・TODO・生理期間・画像のバッチ

    Returns:
        種別ごとの処理件数

    Raises:
        MalformedInputError: 日付の形式不正など（何もコミットしない）
        StorageError: ストレージ障害（何もコミットしない）
    """
    def put_period(tx, item: PeriodSyncItem):
        parse_period_date(item.start_date)
        parse_period_date(item.end_date)
        tx.put_period(item)

    def put_image(tx, item):
        # ブロブを先に、参照を後に（同一トランザクション内）
        tx.put_image_blob(item.hash, item.blob, item.updated_at)
        tx.put_image_ref(item.diary_uuid, item.file_name, item.hash, item.updated_at)

    with db.transaction() as tx:
        _stage("diary upsert", tx.put_diary, request.diaries)
        _stage("todo upsert", tx.put_todo, request.todos)
        _stage("period upsert", lambda item: put_period(tx, item), request.periods)
        _stage("image upsert", lambda item: put_image(tx, item), request.images)

    counts = SyncCounts(
        diaries=len(request.diaries),
        todos=len(request.todos),
        periods=len(request.periods),
        images=len(request.images),
    )
    logger.info(
        f"sync_upload success: diaries={counts.diaries}, todos={counts.todos}, "
        f"periods={counts.periods}, images={counts.images}"
    )
    return counts


def is_newer(stored_updated_at: int, known: Dict[str, int], key: str) -> bool:
    """
    クライアントに送るべきかどうか

    マニフェストに無いキーは常に送る。ある場合は stored > known のときだけ
    （同じ値は同期済みとみなす）。
    """
    if key not in known:
        return True
    return stored_updated_at > known[key]


def _blob(item: dict) -> EncryptedBlob:
    return EncryptedBlob(iv=item["payload_iv"], data=item["payload_data"])


def _diary_from_item(item: dict) -> DiarySyncItem:
    return DiarySyncItem(
        uuid=item["uuid"],
        author=item["author"],
        timestamp=item["timestamp"],
        updated_at=item["updated_at"],
        payload=_blob(item),
    )


def _todo_from_item(item: dict) -> TodoSyncItem:
    return TodoSyncItem(
        uuid=item["uuid"],
        author=item["author"],
        is_completed=item["is_completed"],
        created_at=item["created_at"],
        completed_at=item.get("completed_at"),
        updated_at=item["updated_at"],
        payload=_blob(item),
    )


def _period_from_item(item: dict) -> PeriodSyncItem:
    return PeriodSyncItem(
        start_date=item["start_date"],
        end_date=item["end_date"],
        updated_at=item["updated_at"],
        payload=_blob(item),
    )


def compute_download(db: SyncDatabase, request: SyncDownloadRequest) -> SyncDownloadEnvelope:
    """
    クライアントのマニフェストより新しいレコードだけを返す

    画像は含めない（必要なものだけ /images/fetch で取得する）。

    Raises:
        StorageError: いずれかの種別の取得に失敗した場合（部分的な結果は返さない）
    """
    diary_known = {meta.uuid: meta.updated_at for meta in request.diaries}
    todo_known = {meta.uuid: meta.updated_at for meta in request.todos}
    period_known = {meta.start_date: meta.updated_at for meta in request.periods}

    diaries = [
        _diary_from_item(item)
        for item in db.scan(KIND_DIARY)
        if is_newer(item["updated_at"], diary_known, item["uuid"])
    ]
    todos = [
        _todo_from_item(item)
        for item in db.scan(KIND_TODO)
        if is_newer(item["updated_at"], todo_known, item["uuid"])
    ]
    periods = [
        _period_from_item(item)
        for item in db.scan(KIND_PERIOD)
        if is_newer(item["updated_at"], period_known, item["start_date"])
    ]

    data = SyncDownloadResponse(diaries=diaries, todos=todos, periods=periods, images=[])
    counts = SyncCounts(
        diaries=len(diaries),
        todos=len(todos),
        periods=len(periods),
        images=0,
    )
    logger.info(
        f"sync_download success: diaries={counts.diaries}, todos={counts.todos}, "
        f"periods={counts.periods}, images={counts.images}"
    )
    return SyncDownloadEnvelope(ok=True, message="ok", counts=counts, data=data)


def collect_sync_meta(db: SyncDatabase) -> SyncMetaResponse:
    """全レコードの (キー, updated_at) を返す（フィルタなし）"""
    diaries: List[SyncMeta] = [
        SyncMeta(uuid=item["uuid"], updated_at=item["updated_at"])
        for item in db.scan(KIND_DIARY, ["uuid", "updated_at"])
    ]
    todos: List[SyncMeta] = [
        SyncMeta(uuid=item["uuid"], updated_at=item["updated_at"])
        for item in db.scan(KIND_TODO, ["uuid", "updated_at"])
    ]
    periods: List[PeriodMeta] = [
        PeriodMeta(start_date=item["start_date"], updated_at=item["updated_at"])
        for item in db.scan(KIND_PERIOD, ["start_date", "updated_at"])
    ]
    return SyncMetaResponse(diaries=diaries, todos=todos, periods=periods)
