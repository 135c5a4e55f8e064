"""
Order Service: エラー体系 (Error Taxonomy)

コアが報告する失敗はすべて以下のクラスのいずれか。
各クラスは境界で返すべき HTTP ステータスと、再配送や呼び出し側の
再試行で成功しうるかどうか (retryable) を持つ。
"""


class OrderServiceError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    """入力が不正。再試行しない。"""

    status_code = 400


class NotFoundError(OrderServiceError):
    """
    存在しない注文 id。

    非同期イベントでは注文がまだ書き込まれていないだけの可能性があるため、
    トランスポートによる再配送を許す。
    """

    status_code = 404
    retryable = True


class InvalidTransitionError(OrderServiceError):
    """現在の状態では受け付けられないイベントが届いた。"""

    status_code = 409
    retryable = True


class StorageReadError(OrderServiceError):
    status_code = 503
    retryable = True


class UnreadableRecordError(StorageReadError):
    """保存済みレコードがデコードできない。再試行しても直らない。"""

    status_code = 500
    retryable = False


class StorageWriteError(OrderServiceError):
    status_code = 503
    retryable = True


class ConcurrentUpdateError(StorageWriteError):
    """条件付き書き込みが同じ注文への別の更新に負けた。"""

    status_code = 409


class EmitError(OrderServiceError):
    """トランスポートがイベントの引き渡しを拒否した、またはタイムアウトした。"""

    status_code = 502
    retryable = True
