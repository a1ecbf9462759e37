"""SQLite 持久化：设置表（带内存缓存）与用户行事务"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

log = logging.getLogger(__name__)

BUSY_TIMEOUT = 5  # 秒

SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT
);
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  username TEXT UNIQUE NOT NULL,
  password TEXT NOT NULL,
  role TEXT DEFAULT 'user',
  status TEXT DEFAULT 'active',
  cat_api_base TEXT DEFAULT '',
  cat_api_key TEXT DEFAULT '',
  cat_proxy TEXT DEFAULT '',
  search_thread_count INTEGER DEFAULT 5,
  cat_sites TEXT DEFAULT '[]',
  cat_site_status TEXT DEFAULT '{}',
  cat_site_home TEXT DEFAULT '{}',
  cat_site_order TEXT DEFAULT '[]',
  cat_site_availability TEXT DEFAULT '{}',
  cat_search_order TEXT DEFAULT '[]',
  cat_search_cover_site TEXT DEFAULT ''
);
CREATE TABLE IF NOT EXISTS search_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  keyword TEXT NOT NULL,
  updated_at INTEGER NOT NULL,
  UNIQUE(user_id, keyword)
);
CREATE INDEX IF NOT EXISTS idx_search_history_user ON search_history(user_id, updated_at DESC);
CREATE TABLE IF NOT EXISTS play_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  site_key TEXT NOT NULL,
  site_name TEXT DEFAULT '',
  spider_api TEXT NOT NULL,
  video_id TEXT NOT NULL,
  video_title TEXT NOT NULL,
  video_poster TEXT DEFAULT '',
  video_remark TEXT DEFAULT '',
  pan_label TEXT DEFAULT '',
  play_flag TEXT DEFAULT '',
  content_key TEXT DEFAULT '',
  episode_index INTEGER DEFAULT 0,
  episode_name TEXT DEFAULT '',
  updated_at INTEGER NOT NULL,
  UNIQUE(user_id, site_key, video_id)
);
CREATE INDEX IF NOT EXISTS idx_play_history_user ON play_history(user_id, updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_play_history_content ON play_history(user_id, content_key, updated_at DESC);
CREATE TABLE IF NOT EXISTS favorites (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  site_key TEXT NOT NULL,
  site_name TEXT DEFAULT '',
  spider_api TEXT NOT NULL,
  video_id TEXT NOT NULL,
  video_title TEXT NOT NULL,
  video_poster TEXT DEFAULT '',
  video_remark TEXT DEFAULT '',
  updated_at INTEGER NOT NULL,
  UNIQUE(user_id, site_key, video_id)
);
CREATE INDEX IF NOT EXISTS idx_favorites_user ON favorites(user_id, updated_at DESC);
"""

DEFAULT_SETTINGS = {
    "site_name": "TV Server",
    "douban_data_proxy": "direct",
    "douban_data_custom": "",
    "douban_img_proxy": "direct-browser",
    "douban_img_custom": "",
    "pan_login_settings": "{}",
    "video_source_sites": "[]",
    "video_source_site_status": "{}",
    "video_source_site_home": "{}",
    "video_source_site_search": "{}",
    "video_source_site_order": "[]",
    "video_source_site_availability": "{}",
    "video_source_site_error": "{}",
    "video_source_search_order": "[]",
    "video_source_search_cover_site": "",
    "video_source_url": "",
    "catpawopen_api_base": "",
    "catpawopen_pans_list": "[]",
    "openlist_api_base": "",
    "openlist_token": "",
    "openlist_quark_tv_mode": "0",
    "openlist_quark_tv_mount": "",
    "goproxy_enabled": "0",
    "goproxy_auto_select": "0",
    "goproxy_servers": "[]",
    "magic_episode_clean_regex_rules": "[]",
    "magic_episode_rules": "[]",
    "magic_aggregate_rules": "[]",
    "magic_aggregate_regex_rules": "[]",
}


class UserNotFound(LookupError):
    """用户行在请求过程中不存在（例如已被删除）"""


class LockedUser:
    """事务内持有写锁的用户行"""

    def __init__(self, conn: sqlite3.Connection, row: sqlite3.Row):
        self._conn = conn
        self.id = row["id"]
        self.values = dict(row)

    def save(self, values: dict):
        for col in values:
            if col not in self.values or col == "id":
                raise KeyError(col)
        if not values:
            return
        assignments = ", ".join(f"{col} = ?" for col in values)
        self._conn.execute(
            f"UPDATE users SET {assignments} WHERE id = ?",
            (*values.values(), self.id),
        )
        self.values.update(values)


class Store:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()  # 设置写入：提交与缓存刷新串行
        self._settings: dict[str, str] = {}
        self._version = 0
        self._init_db()

    # ── 连接与事务 ──

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=BUSY_TIMEOUT, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """自动提交模式的连接，用于单条语句"""
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE 事务：开始即持有写锁，读-改-写期间不会被其它写者插入"""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            conn.executemany(
                "INSERT OR IGNORE INTO settings(key, value) VALUES (?, ?)",
                DEFAULT_SETTINGS.items(),
            )
        log.info("数据库已就绪: %s", self.path)

    # ── 设置 ──

    @property
    def settings_version(self) -> int:
        with self._lock:
            return self._version

    def get_setting(self, key: str) -> str:
        k = key.strip()
        if not k:
            return ""
        with self._lock:
            if k in self._settings:
                return self._settings[k]
        with self.connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ? LIMIT 1", (k,)).fetchone()
        value = row["value"] if row and row["value"] is not None else ""
        with self._lock:
            self._settings.setdefault(k, value)
            return self._settings[k]

    def get_settings(self, keys) -> dict[str, str]:
        return {k: self.get_setting(k) for k in keys}

    def set_setting(self, key: str, value: str) -> bool:
        return self.set_settings({key: value})

    def set_settings(self, values: dict[str, str]) -> bool:
        """在同一事务内写入多个键；返回是否有值真正变化"""
        values = {k.strip(): v for k, v in values.items() if k.strip()}
        if not values:
            return False
        with self._write_lock:
            with self.transaction() as conn:
                changes = self._write_settings(conn, values)
            self._commit_cache(values, changes)
        return changes > 0

    def update_settings(self, keys, mutate: Callable[[dict], dict | None]) -> dict[str, str]:
        """读-改-写一组设置键

        mutate 收到当前数据库中的值，返回需要写入的新值（None 表示不写）。
        返回实际发生变化的键值。
        """
        keys = [k.strip() for k in keys if k.strip()]
        with self._write_lock:
            with self.transaction() as conn:
                marks = ",".join("?" for _ in keys)
                rows = conn.execute(
                    f"SELECT key, value FROM settings WHERE key IN ({marks})", keys,
                ).fetchall()
                current = {k: "" for k in keys}
                current.update({r["key"]: r["value"] or "" for r in rows})
                proposed = mutate(dict(current)) or {}
                changed = {k: v for k, v in proposed.items() if current.get(k) != v}
                changes = self._write_settings(conn, changed) if changed else 0
            self._commit_cache(current, 0)
            self._commit_cache(changed, changes)
        return changed

    def _write_settings(self, conn: sqlite3.Connection, values: dict[str, str]) -> int:
        changes = 0
        for k, v in values.items():
            cur = conn.execute(
                """
                INSERT INTO settings(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                WHERE settings.value IS NOT excluded.value
                """,
                (k, v),
            )
            changes += max(cur.rowcount, 0)
        return changes

    def _commit_cache(self, values: dict[str, str], changes: int):
        with self._lock:
            self._settings.update(values)
            if changes > 0:
                self._version += 1

    # ── 用户行 ──

    def get_user_row(self, user_id: int) -> dict:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (user_id,)).fetchone()
        if row is None:
            raise UserNotFound(user_id)
        return dict(row)

    @contextmanager
    def locked_user(self, user_id: int) -> Iterator[LockedUser]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (user_id,)).fetchone()
            if row is None:
                raise UserNotFound(user_id)
            yield LockedUser(conn, row)
