"""
Order Service: 受信ペイロードのデコード (Boundary Adapters)

HTTP ボディやストリームのメッセージを、コーディネータの入力型に変換する。
"""

from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

M = TypeVar("M", bound=BaseModel)


def describe(error) -> str:
    """pydantic (または FastAPI リクエスト) の検証エラーを 1 行にまとめる。"""
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    )


def decode(model: type[M], payload: str | bytes | dict) -> M:
    """JSON ドキュメント (文字列でも解析済みでもよい) を ``model`` として検証する。"""
    try:
        if isinstance(payload, dict):
            return model.model_validate(payload)
        return model.model_validate_json(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {model.__name__}: {describe(e)}") from e
