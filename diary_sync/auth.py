"""
共有 API キー認証（X-API-Key ヘッダー）
"""
import hmac
import os
from typing import Optional

from loguru import logger


API_KEY_HEADER = "X-API-Key"


class AuthenticationError(Exception):
    """認証エラー"""
    pass


class ApiKeyAuthenticator:
    """
    共有シークレットによる認証

    expected_key を渡さない場合はリクエストごとに環境変数 API_KEY を読む。
    シークレットが空なら認証は無効（全リクエストを許可）。
    """

    def __init__(self, expected_key: Optional[str] = None):
        self._expected_key = expected_key

    @property
    def expected_key(self) -> str:
        if self._expected_key is not None:
            return self._expected_key.strip()
        return os.environ.get("API_KEY", "").strip()

    def verify(self, provided: Optional[str]) -> None:
        """
        提示されたキーを検証する

        Args:
            provided: X-API-Key ヘッダーの値（なければ None）

        Raises:
            AuthenticationError: キーが無い、または一致しない場合
        """
        expected = self.expected_key
        if not expected:
            return

        # 定数時間比較（タイミング攻撃対策）
        if not hmac.compare_digest(
            (provided or "").encode("utf-8"), expected.encode("utf-8")
        ):
            raise AuthenticationError("unauthorized")

    def is_allowed(self, provided: Optional[str]) -> bool:
        try:
            self.verify(provided)
        except AuthenticationError:
            logger.warning("API key check failed")
            return False
        return True
