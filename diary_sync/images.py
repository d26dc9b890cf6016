"""
日記画像ストア（コンテンツハッシュによる重複排除）

画像本体はハッシュごとに 1 件だけ保存し、(diary_uuid, file_name) の参照が
ハッシュを指す。参照されなくなった本体は削除しない。
"""
from typing import List

from loguru import logger

from .database import KIND_IMAGE, KIND_IMAGE_REF, SyncDatabase, entity_key
from .models import (
    DiaryImageRefItem,
    DiaryImageSyncItem,
    EncryptedBlob,
    ImageFetchResponse,
)


class ImageNotFoundError(LookupError):
    """画像参照または画像本体が見つからない"""
    pass


def upload_image_blobs(db: SyncDatabase, images: List[DiaryImageSyncItem]) -> int:
    """
    画像本体をハッシュで upsert する（リクエスト単位でアトミック）

    参照は書き込まない。参照は upsert_image_refs か /sync/upload で作る。

    Returns:
        処理件数
    """
    with db.transaction() as tx:
        for item in images:
            tx.put_image_blob(item.hash, item.blob, item.updated_at)

    logger.info(f"image_upload success: {len(images)} images")
    return len(images)


def upsert_image_refs(db: SyncDatabase, refs: List[DiaryImageRefItem]) -> int:
    """
    (diary_uuid, file_name) の参照を upsert する（リクエスト単位でアトミック）

    Returns:
        処理件数
    """
    with db.transaction() as tx:
        for ref in refs:
            tx.put_image_ref(ref.diary_uuid, ref.file_name, ref.hash, ref.updated_at)

    logger.info(f"image_refs_upsert success: {len(refs)} refs")
    return len(refs)


def list_image_hashes(db: SyncDatabase) -> List[str]:
    """保存済みの全ハッシュ"""
    hashes = [item["hash"] for item in db.scan(KIND_IMAGE, ["hash"])]
    logger.info(f"image_hashes success: {len(hashes)} hashes")
    return hashes


def list_image_refs(db: SyncDatabase) -> List[DiaryImageRefItem]:
    """全参照（マニフェスト）"""
    refs = [
        DiaryImageRefItem(
            diary_uuid=item["diary_uuid"],
            file_name=item["file_name"],
            hash=item["hash"],
            updated_at=item["updated_at"],
        )
        for item in db.scan(KIND_IMAGE_REF, ["diary_uuid", "file_name", "hash", "updated_at"])
    ]
    logger.info(f"image_refs success: {len(refs)} refs")
    return refs


def fetch_image(db: SyncDatabase, diary_uuid: str, file_name: str) -> ImageFetchResponse:
    """
    参照から画像本体を引いて返す

    Args:
        diary_uuid: 日記 UUID
        file_name: ファイル名

    Returns:
        画像本体と参照情報

    Raises:
        ImageNotFoundError: 参照が無い、または参照先の本体が無い場合
        StorageError: ストレージ障害
    """
    ref = db.get_item(entity_key(KIND_IMAGE_REF, diary_uuid, file_name))
    if ref is None:
        raise ImageNotFoundError(f"image ref not found: {diary_uuid}/{file_name}")

    blob_item = db.get_item(entity_key(KIND_IMAGE, ref["hash"]))
    data = db.get_image_data(blob_item) if blob_item is not None else None
    if data is None:
        # 本来はアップロードのアトミック性で起こらない
        logger.warning(f"image_fetch: ref {diary_uuid}/{file_name} points to missing blob {ref['hash']}")
        raise ImageNotFoundError(f"image blob not found for hash {ref['hash']}")

    return ImageFetchResponse(
        file_name=ref["file_name"],
        diary_uuid=ref["diary_uuid"],
        hash=ref["hash"],
        updated_at=ref["updated_at"],
        blob=EncryptedBlob(iv=blob_item["blob_iv"], data=data),
    )
