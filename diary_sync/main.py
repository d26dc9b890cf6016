"""
FastAPI アプリケーションのメインエントリポイント
"""
import logging
import os
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from loguru import logger

# .env ファイルから環境変数を読み込み（ローカル開発時）
package_dir = Path(__file__).parent
env_path = package_dir / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

from . import __version__
from .auth import API_KEY_HEADER, ApiKeyAuthenticator
from .database import StorageError, SyncDatabase, TransactionLimitError
from .images import (
    ImageNotFoundError,
    fetch_image,
    list_image_hashes,
    list_image_refs,
    upload_image_blobs,
    upsert_image_refs,
)
from .models import (
    ImageFetchRequest,
    ImageFetchResponse,
    ImageHashListResponse,
    ImageRefsResponse,
    ImageRefsUpsertRequest,
    ImageUploadRequest,
    SyncDownloadEnvelope,
    SyncDownloadRequest,
    SyncMetaResponse,
    SyncUploadRequest,
    SyncUploadResponse,
)
from .sync import MalformedInputError, apply_upload, collect_sync_meta, compute_download


# 環境変数
TABLE_NAME = os.environ.get("DYNAMODB_TABLE_NAME", "diary_sync")
IMAGE_BUCKET_NAME = os.environ.get("IMAGE_BUCKET_NAME", "")
USE_IN_MEMORY_DB = os.environ.get("USE_IN_MEMORY_DB", "").lower() == "true"
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
BIND_ADDR = os.environ.get("BIND_ADDR", "0.0.0.0:8080")

# 画像アップロードを考慮したリクエストボディ上限（50MB）
MAX_BODY_BYTES = 50 * 1024 * 1024

# 認証不要のパス
PUBLIC_PATHS = {"/", "/health"}

ALLOWED_ORIGINS_LIST = [origin.strip() for origin in ALLOWED_ORIGINS.split(",") if origin.strip()]


class InterceptHandler(logging.Handler):
    """標準 logging（uvicorn など）のログを loguru に流す"""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str = LOG_LEVEL) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False


configure_logging()

app = FastAPI(title="Diary Sync API", version=__version__)

# 認証ケイパビリティ（差し替え可能）
app.state.authenticator = ApiKeyAuthenticator()


_db: Optional[SyncDatabase] = None
_db_lock = threading.Lock()


def get_db() -> SyncDatabase:
    """エンティティストア（初回アクセス時に生成）"""
    global _db
    # スレッドプールから並行に呼ばれても生成は 1 回だけ
    with _db_lock:
        if _db is None:
            _db = SyncDatabase(TABLE_NAME, IMAGE_BUCKET_NAME, use_in_memory=USE_IN_MEMORY_DB)
        return _db


# ミドルウェアは後に登録したものほど外側で実行される:
# CORS → リクエストログ → API キー認証 → ボディサイズ制限

@app.middleware("http")
async def body_limit_middleware(request: Request, call_next):
    """
    Content-Length が上限を超えるリクエストを拒否

    申告された Content-Length だけを見る。chunked など長さの申告がない
    ボディはここでは測らない。
    """
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_BODY_BYTES:
        return JSONResponse(content={"detail": "request body too large"}, status_code=413)
    return await call_next(request)


@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    """
    X-API-Key を検証（ボディの解析やストレージへのアクセスより前）
    """
    if request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
        return await call_next(request)

    authenticator = request.app.state.authenticator
    if not authenticator.is_allowed(request.headers.get(API_KEY_HEADER)):
        return PlainTextResponse("unauthorized", status_code=401)
    return await call_next(request)


@app.middleware("http")
async def request_log_middleware(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    """
    手動 CORS ミドルウェア
    すべてのレスポンス（エラーを含む）に CORS ヘッダーを追加
    """
    origin = request.headers.get("origin", "")
    cors_headers = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": f"Content-Type, {API_KEY_HEADER}",
    }

    if request.method == "OPTIONS":
        # プリフライトリクエスト
        if origin in ALLOWED_ORIGINS_LIST:
            return JSONResponse(
                content={},
                status_code=200,
                headers={
                    **cors_headers,
                    "Access-Control-Allow-Origin": origin,
                    "Access-Control-Max-Age": "3600",
                },
            )
        return JSONResponse(content={"error": "Forbidden"}, status_code=403)

    response = await call_next(request)

    if origin in ALLOWED_ORIGINS_LIST:
        response.headers["Access-Control-Allow-Origin"] = origin
        for key, value in cors_headers.items():
            response.headers[key] = value

    return response


def _json(status_code: int, model) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(by_alias=True))


@app.get("/health")
def health_check():
    """ヘルスチェックエンドポイント"""
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/")
def root():
    """ルートエンドポイント"""
    return {"message": "Diary Sync API", "version": __version__}


@app.post("/sync/upload", response_model=SyncUploadResponse)
def sync_upload(payload: SyncUploadRequest, db: SyncDatabase = Depends(get_db)):
    """
    日記・TODO・生理期間・画像をまとめて反映

    - すべて成功するか、何も反映されないか
    - 日付形式の不正は 400、ストレージ障害は 500（件数はゼロ）
    """
    try:
        counts = apply_upload(db, payload)
    except (MalformedInputError, TransactionLimitError) as e:
        logger.warning(f"sync_upload: {e}")
        return _json(400, SyncUploadResponse.failure(str(e)))
    except StorageError as e:
        logger.warning(f"sync_upload: {e}")
        return _json(500, SyncUploadResponse.failure(str(e)))

    return SyncUploadResponse(ok=True, message="ok", counts=counts)


@app.post("/sync/download", response_model=SyncDownloadEnvelope)
def sync_download(payload: SyncDownloadRequest, db: SyncDatabase = Depends(get_db)):
    """
    クライアントのマニフェストより新しいレコードを返す

    - 画像は常に空（/images/fetch で個別取得）
    """
    try:
        return compute_download(db, payload)
    except StorageError as e:
        logger.warning(f"sync_download: {e}")
        return _json(500, SyncDownloadEnvelope.failure(str(e)))


@app.post("/sync/meta", response_model=SyncMetaResponse)
def sync_meta(db: SyncDatabase = Depends(get_db)):
    """全レコードのキーと updated_at（ペイロードなし）"""
    try:
        return collect_sync_meta(db)
    except StorageError as e:
        logger.warning(f"sync_meta: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/images/hashes", response_model=ImageHashListResponse)
def image_hashes(db: SyncDatabase = Depends(get_db)):
    try:
        return ImageHashListResponse(hashes=list_image_hashes(db))
    except StorageError as e:
        logger.warning(f"image_hashes: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/images/refs", response_model=ImageRefsResponse)
def image_refs(db: SyncDatabase = Depends(get_db)):
    try:
        return ImageRefsResponse(refs=list_image_refs(db))
    except StorageError as e:
        logger.warning(f"image_refs: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/images/upload")
def image_upload(payload: ImageUploadRequest, db: SyncDatabase = Depends(get_db)):
    """画像本体をハッシュで保存（成功時は空ボディ）"""
    try:
        upload_image_blobs(db, payload.images)
    except TransactionLimitError as e:
        logger.warning(f"image_upload: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.warning(f"image_upload: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return Response(status_code=200)


@app.post("/images/refs/upsert")
def image_refs_upsert(payload: ImageRefsUpsertRequest, db: SyncDatabase = Depends(get_db)):
    """画像参照を保存（成功時は空ボディ）"""
    try:
        upsert_image_refs(db, payload.refs)
    except TransactionLimitError as e:
        logger.warning(f"image_refs_upsert: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.warning(f"image_refs_upsert: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return Response(status_code=200)


@app.post("/images/fetch", response_model=ImageFetchResponse)
def image_fetch(payload: ImageFetchRequest, db: SyncDatabase = Depends(get_db)):
    """(diaryUuid, fileName) の画像を取得"""
    try:
        return fetch_image(db, payload.diary_uuid, payload.file_name)
    except ImageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        logger.warning(f"image_fetch: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def run() -> None:
    """uvicorn でローカル起動（BIND_ADDR=host:port）"""
    host, _, port = BIND_ADDR.rpartition(":")
    logger.info(f"Starting server on {BIND_ADDR}")
    uvicorn.run(app, host=host or "0.0.0.0", port=int(port or 8080), log_config=None)


if __name__ == "__main__":
    run()
