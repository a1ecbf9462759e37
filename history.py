"""搜索历史、播放记录、收藏"""

import time

SEARCH_HISTORY_LIMIT = 20

PLAY_COLUMNS = (
    "content_key, site_key, site_name, spider_api, video_id, video_title, video_poster, "
    "video_remark, pan_label, play_flag, episode_index, episode_name, updated_at"
)
FAVORITE_COLUMNS = (
    "site_key, site_name, spider_api, video_id, video_title, video_poster, video_remark, updated_at"
)


def normalize_content_key(title: str) -> str:
    """同一影片跨站点合并用的 key：去掉所有空白并小写"""
    return "".join((title or "").split()).lower()


def is_netdisk_item(video_id: str) -> bool:
    return (video_id or "").strip().lower().endswith("######wodepan")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


def _play_row(row) -> dict:
    return {_camel(k): row[k] for k in row.keys()}


# ── 搜索历史 ──

def list_search_history(store, user_id: int) -> list[str]:
    with store.connection() as conn:
        rows = conn.execute(
            "SELECT keyword FROM search_history WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
            (user_id, SEARCH_HISTORY_LIMIT),
        ).fetchall()
    return [r["keyword"].strip() for r in rows if r["keyword"].strip()]


def add_search_history(store, user_id: int, keyword: str):
    with store.connection() as conn:
        conn.execute(
            """
            INSERT INTO search_history(user_id, keyword, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id, keyword) DO UPDATE SET updated_at = excluded.updated_at
            """,
            (user_id, keyword, int(time.time())),
        )


def delete_search_history(store, user_id: int, keyword: str = ""):
    with store.connection() as conn:
        if keyword:
            conn.execute(
                "DELETE FROM search_history WHERE user_id = ? AND keyword = ?", (user_id, keyword),
            )
        else:
            conn.execute("DELETE FROM search_history WHERE user_id = ?", (user_id,))


# ── 播放记录 ──

def list_play_history(store, user_id: int, limit: int) -> list[dict]:
    """按内容去重的最近播放，每部影片只保留最新一条"""
    source_limit = min(500, max(50, limit * 10))
    with store.connection() as conn:
        rows = conn.execute(
            f"SELECT {PLAY_COLUMNS} FROM play_history WHERE user_id = ? "
            "ORDER BY updated_at DESC LIMIT ?",
            (user_id, source_limit),
        ).fetchall()

    seen: set[str] = set()
    out = []
    for row in rows:
        if is_netdisk_item(row["video_id"]):
            continue
        item = _play_row(row)
        key = (item["contentKey"] or "").strip()
        if not key:
            key = normalize_content_key(item["videoTitle"])
            item["contentKey"] = key
        if not key:
            key = f"{item['siteKey']}::{item['videoId']}"
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
        if len(out) >= limit:
            break
    return out


def get_play_history(store, user_id: int, site_key: str, video_id: str) -> dict | None:
    with store.connection() as conn:
        row = conn.execute(
            f"SELECT {PLAY_COLUMNS} FROM play_history "
            "WHERE user_id = ? AND site_key = ? AND video_id = ? ORDER BY updated_at DESC LIMIT 1",
            (user_id, site_key, video_id),
        ).fetchone()
    if row is None or is_netdisk_item(video_id):
        return None
    item = _play_row(row)
    if not (item["contentKey"] or "").strip():
        item["contentKey"] = normalize_content_key(item["videoTitle"])
    return item


def record_play(store, user_id: int, entry: dict, force_poster: bool = False):
    """写入播放记录；同一影片只保留最近播放的站点，已有海报默认保持不变"""
    if is_netdisk_item(entry["video_id"]):
        return
    content_key = normalize_content_key(entry["video_title"]) or f"{entry['site_key']}::{entry['video_id']}"

    with store.transaction() as conn:
        row = conn.execute(
            """
            SELECT video_poster FROM play_history
            WHERE user_id = ? AND content_key = ? AND video_poster <> ''
            ORDER BY updated_at DESC LIMIT 1
            """,
            (user_id, content_key),
        ).fetchone()
        locked_poster = (row["video_poster"] if row else "").strip()
        poster = entry.get("video_poster", "")
        if locked_poster and (not force_poster or not poster.strip()):
            poster = locked_poster

        conn.execute(
            "DELETE FROM play_history WHERE user_id = ? AND (content_key = ? OR video_title = ?)",
            (user_id, content_key, entry["video_title"]),
        )
        conn.execute(
            """
            INSERT INTO play_history(
              user_id, content_key, site_key, site_name, spider_api, video_id, video_title,
              video_poster, video_remark, pan_label, play_flag, episode_index, episode_name, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id, content_key, entry["site_key"], entry.get("site_name", ""),
                entry["spider_api"], entry["video_id"], entry["video_title"], poster,
                entry.get("video_remark", ""), entry.get("pan_label", ""),
                entry.get("play_flag", ""), max(entry.get("episode_index", 0), 0),
                entry.get("episode_name", ""), int(time.time()),
            ),
        )


# ── 收藏 ──

def list_favorites(store, user_id: int, limit: int) -> list[dict]:
    with store.connection() as conn:
        rows = conn.execute(
            f"SELECT {FAVORITE_COLUMNS} FROM favorites WHERE user_id = ? "
            "ORDER BY updated_at DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [{_camel(k): r[k] for k in r.keys()} for r in rows]


def is_favorited(store, user_id: int, site_key: str, video_id: str) -> bool:
    with store.connection() as conn:
        row = conn.execute(
            "SELECT 1 FROM favorites WHERE user_id = ? AND site_key = ? AND video_id = ? LIMIT 1",
            (user_id, site_key, video_id),
        ).fetchone()
    return row is not None


def toggle_favorite(store, user_id: int, entry: dict) -> bool:
    """已收藏则取消，否则加入；返回操作后的收藏状态"""
    with store.transaction() as conn:
        deleted = conn.execute(
            "DELETE FROM favorites WHERE user_id = ? AND site_key = ? AND video_id = ?",
            (user_id, entry["site_key"], entry["video_id"]),
        ).rowcount
        if deleted:
            return False
        conn.execute(
            """
            INSERT INTO favorites(user_id, site_key, site_name, spider_api, video_id, video_title,
                                  video_poster, video_remark, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id, entry["site_key"], entry.get("site_name", ""), entry["spider_api"],
                entry["video_id"], entry["video_title"], entry.get("video_poster", ""),
                entry.get("video_remark", ""), int(time.time()),
            ),
        )
    return True
