"""响应封装：构建系统统一的错误返回结构。"""

from typing import Any


def create_error_response(code: str, desc: str, **extra: Any) -> dict[str, Any]:
    """按照 ``code``、``desc`` 组合出统一错误响应体，额外字段原样附加。"""
    payload: dict[str, Any] = {"code": code, "desc": desc}
    payload.update(extra)
    return payload
