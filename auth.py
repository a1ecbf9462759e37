"""认证模块 — bcrypt 密码 + JWT Cookie + 用户管理"""

import logging
import os
import sqlite3
import time
from dataclasses import dataclass

import bcrypt
import jwt

log = logging.getLogger(__name__)

COOKIE_NAME = "tv_server_auth"

# 运行时状态
_store = None
_secret_key = "default-secret"
_token_days = 30
_cookie_secure = False
_bcrypt_rounds = 10


@dataclass
class User:
    id: int
    username: str
    role: str
    status: str

    @property
    def active(self) -> bool:
        return self.status == "active"


def init_auth(config: dict, store):
    """从配置初始化认证，并确保存在管理员账号"""
    global _store, _secret_key, _token_days, _cookie_secure, _bcrypt_rounds
    auth_cfg = config.get("auth", {})
    _store = store
    _secret_key = auth_cfg.get("secret_key", "default-secret")
    _token_days = int(auth_cfg.get("token_days", 30))
    _cookie_secure = bool(auth_cfg.get("cookie_secure", False)) or os.getenv("TV_SERVER_COOKIE_SECURE") == "1"
    _bcrypt_rounds = int(auth_cfg.get("bcrypt_rounds", 10))
    ensure_admin(
        auth_cfg.get("admin_username", "admin"),
        auth_cfg.get("admin_password", "admin"),
    )


def cookie_options() -> dict:
    return {
        "httponly": True,
        "samesite": "lax",
        "secure": _cookie_secure,
        "max_age": 86400 * _token_days,
        "path": "/",
    }


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=_bcrypt_rounds)).decode()


def check_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


def ensure_admin(username: str, password: str):
    with _store.connection() as conn:
        row = conn.execute("SELECT COUNT(1) FROM users WHERE role = 'admin'").fetchone()
        if row[0] > 0:
            return
        conn.execute(
            "INSERT INTO users(username, password, role, status) VALUES (?, ?, 'admin', 'active')",
            (username, hash_password(password)),
        )
    log.info("已创建默认管理员: %s", username)


def _row_to_user(row) -> User:
    return User(id=row["id"], username=row["username"], role=row["role"] or "user", status=row["status"] or "active")


def get_user(user_id: int) -> User | None:
    with _store.connection() as conn:
        row = conn.execute(
            "SELECT id, username, role, status FROM users WHERE id = ? LIMIT 1", (user_id,),
        ).fetchone()
    return _row_to_user(row) if row else None


def authenticate(username: str, password: str) -> tuple[User | None, int, str]:
    """验证登录，返回 (用户, HTTP 状态码, 错误信息)"""
    username = username.strip()
    if not username or not password:
        return None, 400, "用户名与密码不能为空"
    with _store.connection() as conn:
        row = conn.execute(
            "SELECT id, username, password, role, status FROM users WHERE username = ? LIMIT 1",
            (username,),
        ).fetchone()
    if not row or not check_password(password, row["password"]):
        return None, 401, "用户名或密码错误"
    if row["status"] != "active":
        return None, 403, "该账户已禁用"
    return _row_to_user(row), 200, ""


def create_token(user: User) -> str:
    """生成 JWT Token"""
    payload = {
        "sub": str(user.id),
        "exp": int(time.time()) + 86400 * _token_days,
    }
    return jwt.encode(payload, _secret_key, algorithm="HS256")


def verify_token(token: str) -> User | None:
    """验证 Token，按 ID 取回当前的用户角色与状态"""
    try:
        payload = jwt.decode(token, _secret_key, algorithms=["HS256"])
        user_id = int(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError):
        return None
    return get_user(user_id)


# ── 用户管理（仅 admin） ──

def list_users() -> list[dict]:
    """列出所有用户（隐藏密码），管理员在前"""
    with _store.connection() as conn:
        rows = conn.execute(
            """
            SELECT username, role, status, cat_api_base, cat_proxy FROM users
            ORDER BY CASE WHEN role = 'admin' THEN 0 ELSE 1 END, username
            """
        ).fetchall()
    return [dict(r) for r in rows]


def add_user(username: str, password: str, role: str = "user",
             cat_api_base: str = "", cat_proxy: str = "") -> tuple[bool, str]:
    role = "shared" if role == "shared" else "user"
    if not username or not password:
        return False, "添加用户失败，可能是用户名已存在或参数无效"
    try:
        with _store.connection() as conn:
            conn.execute(
                """
                INSERT INTO users(username, password, role, status, cat_api_base, cat_proxy)
                VALUES (?, ?, ?, 'active', ?, ?)
                """,
                (username, hash_password(password), role, cat_api_base, cat_proxy),
            )
    except sqlite3.IntegrityError:
        return False, "添加用户失败，可能是用户名已存在或参数无效"
    log.info("创建用户: %s (%s)", username, role)
    return True, "创建成功"


def toggle_ban(username: str) -> tuple[bool, str]:
    """启用/禁用切换，返回 (是否成功, 新状态)"""
    with _store.transaction() as conn:
        row = conn.execute(
            "SELECT role, status FROM users WHERE username = ? LIMIT 1", (username,),
        ).fetchone()
        if not row or row["role"] == "admin":
            return False, ""
        next_status = "banned" if row["status"] == "active" else "active"
        conn.execute(
            "UPDATE users SET status = ? WHERE username = ? AND role <> 'admin'",
            (next_status, username),
        )
    log.info("用户 %s 状态 -> %s", username, next_status)
    return True, next_status


def delete_user(username: str) -> dict | None:
    """删除用户及其历史、收藏；管理员不可删除"""
    with _store.transaction() as conn:
        row = conn.execute(
            "SELECT id, role FROM users WHERE username = ? LIMIT 1", (username,),
        ).fetchone()
        if not row or row["role"] == "admin":
            return None
        user_id = row["id"]
        deleted = {
            "historyDeleted": conn.execute(
                "DELETE FROM search_history WHERE user_id = ?", (user_id,)).rowcount,
            "playHistoryDeleted": conn.execute(
                "DELETE FROM play_history WHERE user_id = ?", (user_id,)).rowcount,
            "favoritesDeleted": conn.execute(
                "DELETE FROM favorites WHERE user_id = ?", (user_id,)).rowcount,
            "userDeleted": conn.execute(
                "DELETE FROM users WHERE id = ? AND role <> 'admin'", (user_id,)).rowcount,
        }
    log.info("删除用户: %s", username)
    return deleted


def update_user(username: str, new_username: str = "", new_password: str = "",
                role: str = "", cat_api_base: str | None = None,
                cat_proxy: str | None = None) -> tuple[bool, str, dict]:
    """修改用户名/密码/角色/个人 CatPawOpen 设置，返回 (是否成功, 错误信息, 最新数据)"""
    if role and role not in ("shared", "user"):
        return False, "角色无效", {}
    password_hash = hash_password(new_password) if new_password else ""
    with _store.transaction() as conn:
        row = conn.execute(
            "SELECT id, username, role FROM users WHERE username = ? LIMIT 1", (username,),
        ).fetchone()
        if not row:
            return False, "用户不存在", {}
        if role and row["role"] == "admin":
            return False, "管理员角色不可修改", {}

        values = {}
        if new_username and new_username != row["username"]:
            values["username"] = new_username
        if password_hash:
            values["password"] = password_hash
        if role:
            values["role"] = role
        if cat_api_base is not None:
            values["cat_api_base"] = cat_api_base
        if cat_proxy is not None:
            values["cat_proxy"] = cat_proxy
        if values:
            assignments = ", ".join(f"{col} = ?" for col in values)
            try:
                conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?", (*values.values(), row["id"]),
                )
            except sqlite3.IntegrityError:
                return False, "用户名已存在或不合法", {}
        final = conn.execute(
            "SELECT username, role, cat_api_base, cat_proxy FROM users WHERE id = ?", (row["id"],),
        ).fetchone()
    log.info("修改用户: %s", username)
    return True, "", {
        "username": final["username"],
        "role": final["role"] or "user",
        "catApiBase": final["cat_api_base"],
        "catProxy": final["cat_proxy"],
    }
