"""
同期 API のデータモデル定義

JSON のフィールド名はクライアント（Android アプリ）に合わせて camelCase、
Python 側の属性名は snake_case。
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SyncModel(BaseModel):
    """camelCase エイリアス付きの共通ベースモデル"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EncryptedBlob(SyncModel):
    """クライアント側で暗号化された不透明なペイロード（サーバーは復号しない）"""
    iv: str
    data: str


class DiarySyncItem(SyncModel):
    """日記エントリ"""
    uuid: str
    author: str
    timestamp: int
    updated_at: int
    payload: EncryptedBlob


class TodoSyncItem(SyncModel):
    """TODO アイテム（未完了の間 completed_at は None）"""
    uuid: str
    author: str
    is_completed: bool
    created_at: int
    completed_at: Optional[int] = None
    updated_at: int
    payload: EncryptedBlob


class PeriodSyncItem(SyncModel):
    """生理期間レコード（start_date がキーを兼ねる, YYYY-MM-DD）"""
    start_date: str
    end_date: str
    updated_at: int
    payload: EncryptedBlob


class DiaryImageSyncItem(SyncModel):
    """日記画像（ブロブ本体 + 参照情報）"""
    file_name: str
    diary_uuid: str
    hash: str
    updated_at: int
    blob: EncryptedBlob


class DiaryImageRefItem(SyncModel):
    """(diary_uuid, file_name) → hash の参照"""
    diary_uuid: str
    file_name: str
    hash: str
    updated_at: int


class SyncMeta(SyncModel):
    uuid: str
    updated_at: int


class PeriodMeta(SyncModel):
    start_date: str
    updated_at: int


class SyncCounts(SyncModel):
    diaries: int = 0
    todos: int = 0
    periods: int = 0
    images: int = 0


# --- リクエスト ---

class SyncUploadRequest(SyncModel):
    diaries: List[DiarySyncItem] = []
    todos: List[TodoSyncItem] = []
    periods: List[PeriodSyncItem] = []
    images: List[DiaryImageSyncItem] = []


class SyncDownloadRequest(SyncModel):
    """クライアントが把握している各レコードの updated_at（マニフェスト）"""
    diaries: List[SyncMeta] = []
    todos: List[SyncMeta] = []
    periods: List[PeriodMeta] = []


class ImageUploadRequest(SyncModel):
    images: List[DiaryImageSyncItem] = []


class ImageRefsUpsertRequest(SyncModel):
    refs: List[DiaryImageRefItem] = []


class ImageFetchRequest(SyncModel):
    diary_uuid: str
    file_name: str


# --- レスポンス ---

class SyncUploadResponse(SyncModel):
    ok: bool
    message: str
    counts: SyncCounts

    @classmethod
    def failure(cls, message: str) -> "SyncUploadResponse":
        """失敗レスポンス（件数は常にゼロ）"""
        return cls(ok=False, message=message, counts=SyncCounts())


class SyncDownloadResponse(SyncModel):
    diaries: List[DiarySyncItem] = []
    todos: List[TodoSyncItem] = []
    periods: List[PeriodSyncItem] = []
    # 画像は一括ダウンロードに含めない（/images/fetch で個別取得）
    images: List[DiaryImageSyncItem] = []


class SyncDownloadEnvelope(SyncModel):
    ok: bool
    message: str
    counts: SyncCounts
    data: SyncDownloadResponse

    @classmethod
    def failure(cls, message: str) -> "SyncDownloadEnvelope":
        """失敗レスポンス（部分的な結果は返さない）"""
        return cls(
            ok=False,
            message=message,
            counts=SyncCounts(),
            data=SyncDownloadResponse(),
        )


class SyncMetaResponse(SyncModel):
    diaries: List[SyncMeta] = []
    todos: List[SyncMeta] = []
    periods: List[PeriodMeta] = []


class ImageHashListResponse(SyncModel):
    hashes: List[str] = []


class ImageRefsResponse(SyncModel):
    refs: List[DiaryImageRefItem] = []


class ImageFetchResponse(SyncModel):
    file_name: str
    diary_uuid: str
    hash: str
    updated_at: int
    blob: EncryptedBlob
