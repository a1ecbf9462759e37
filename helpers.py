"""接口公用：错误、请求体解析、登录/权限校验"""

import json
import logging
from urllib.parse import urlsplit, urlunsplit

from fastapi import Request

import auth
from store import Store

log = logging.getLogger(__name__)

MAX_BODY = 1 << 20


class ApiError(Exception):
    """由异常处理器转换为 {"success": false, "message": ...}"""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def get_store(request: Request) -> Store:
    return request.app.state.store


async def read_json(request: Request) -> dict:
    """宽松读取 JSON 对象，格式错误时视为空对象"""
    body = await request.body()
    if not body or len(body) > MAX_BODY:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def current_user(request: Request) -> auth.User | None:
    token = request.cookies.get(auth.COOKIE_NAME)
    if not token:
        return None
    return auth.verify_token(token)


def require_user(request: Request) -> auth.User:
    user = current_user(request)
    if not user:
        raise ApiError(401, "未登录")
    if not user.active:
        raise ApiError(403, "该账户已禁用")
    return user


def require_admin(request: Request) -> auth.User:
    user = require_user(request)
    if user.role != "admin":
        raise ApiError(403, "无权限操作")
    return user


def text_field(body: dict, *names: str) -> str | None:
    """按顺序取第一个存在的字符串字段（兼容 camelCase 与 snake_case）"""
    for name in names:
        value = body.get(name)
        if isinstance(value, str):
            return value
    return None


def normalize_cat_api_base(value: str) -> str:
    """规范化 CatPawOpen 地址；粘贴 /spider/... 或配置地址时回退到服务根路径"""
    raw = (value or "").strip()
    if not raw:
        return ""
    try:
        parts = urlsplit(raw)
    except ValueError:
        return ""
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return ""

    path = parts.path or "/"
    idx = path.find("/spider/")
    if idx >= 0:
        path = path[:idx] or "/"
    path = path.rstrip("/")
    if path.endswith("/spider"):
        path = path[: -len("/spider")]
    path = path.rstrip("/")
    for suffix in ("/full-config", "/config", "/website"):
        if path.endswith(suffix):
            path = path[: -len(suffix)].rstrip("/")
    if not path.endswith("/"):
        path += "/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def normalize_http_base(value: str) -> str:
    """http/https 服务地址，去掉查询参数与结尾的 /"""
    raw = (value or "").strip()
    if not raw:
        return ""
    try:
        parts = urlsplit(raw)
    except ValueError:
        return ""
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return ""
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), "", "")).rstrip("/")


def normalize_mount_path(value: str) -> str:
    p = (value or "").strip()
    if not p:
        return ""
    p = f"/{p}/"
    while "//" in p:
        p = p.replace("//", "/")
    return p
