"""
暗号化日記データの同期バックエンド
"""
__version__ = "1.0.0"
