"""Web 接口 — FastAPI + 认证"""

import logging
import sqlite3

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

import auth
import history
from dashboard import router as dashboard_router
from helpers import (
    ApiError,
    current_user,
    get_store,
    normalize_cat_api_base,
    read_json,
    require_user,
    text_field,
)
from sites import (
    dump_json,
    normalize_availability,
    parse_any_bool,
    parse_int,
    parse_object,
    parse_sites,
    parse_string_array,
    site_keys,
)
from sites.merge import home_sites
from sites.reconcile import reconcile_state
from sites.resolve import (
    BASE_ROLE,
    UserSiteState,
    global_rows,
    resolve_user_sites,
    source_keys,
    update_user_sites,
    user_rows,
)
from sites.search import normalize_search_order, resolve_cover_site
from sites.state import USER_COLUMNS, SiteState, state_changed
from store import UserNotFound

log = logging.getLogger(__name__)
app = FastAPI(title="TV Server")
app.include_router(dashboard_router)

DEFAULT_THREAD_COUNT = 5

# 叠加字段 -> 请求体中的值字段名
TOGGLE_FIELDS = {"status": "enabled", "home": "home", "availability": "availability"}


def init_app(store):
    """注入存储"""
    app.state.store = store


# ── 异常处理 ──

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse({"success": False, "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(sqlite3.Error)
async def store_error_handler(request: Request, exc: sqlite3.Error):
    log.error("数据库操作失败: %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"success": False, "message": "请求失败"}, status_code=500)


@app.exception_handler(UserNotFound)
async def user_missing_handler(request: Request, exc: UserNotFound):
    log.warning("用户 %s 在请求过程中不存在: %s", exc, request.url.path)
    return JSONResponse({"success": False, "message": "请求失败"}, status_code=500)


# ── 认证 ──

@app.post("/api/login")
async def api_login(request: Request):
    body = await read_json(request)
    username = text_field(body, "username") or ""
    user, status, msg = auth.authenticate(username, text_field(body, "password") or "")
    if not user:
        log.warning("登录失败: %s (%s)", username.strip(), msg)
        raise ApiError(status, msg)
    resp = JSONResponse({"success": True, "user": {"username": user.username, "role": user.role}})
    resp.set_cookie(auth.COOKIE_NAME, auth.create_token(user), **auth.cookie_options())
    log.info("用户登录: %s (%s)", user.username, user.role)
    return resp


@app.get("/api/logout")
async def api_logout():
    resp = RedirectResponse("/", status_code=302)
    resp.delete_cookie(auth.COOKIE_NAME, path="/")
    return resp


def _search_settings(store, row: dict, role: str) -> tuple[list[str], str]:
    order = normalize_search_order(
        source_keys(store, row, role), parse_string_array(row.get("cat_search_order") or ""),
    )
    return order, resolve_cover_site(order, row.get("cat_search_cover_site") or "")


def _thread_count(row: dict) -> int:
    n = row.get("search_thread_count") or 0
    return n if n >= 1 else DEFAULT_THREAD_COUNT


@app.get("/api/bootstrap")
async def api_bootstrap(request: Request):
    """前端启动所需的全部状态：站点名、当前用户、个人设置与首页站点"""
    store = get_store(request)
    site_name = store.get_setting("site_name")
    user = current_user(request)
    if not user or not user.active:
        return {"authenticated": False, "siteName": site_name}

    resolved = resolve_user_sites(store, user)
    row = store.get_user_row(user.id)
    order, cover = _search_settings(store, row, user.role)
    return {
        "authenticated": True,
        "siteName": site_name,
        "user": {"username": user.username, "role": user.role},
        "settings": {
            "doubanDataProxy": store.get_setting("douban_data_proxy"),
            "doubanDataCustom": store.get_setting("douban_data_custom"),
            "doubanImgProxy": store.get_setting("douban_img_proxy"),
            "doubanImgCustom": store.get_setting("douban_img_custom"),
            "catApiBase": row["cat_api_base"],
            "catProxy": row["cat_proxy"],
            "searchThreadCount": _thread_count(row),
            "searchSiteOrder": order,
            "searchCoverSite": cover,
            "requiresCatApiBase": resolved.requires_provider,
            "homeSites": home_sites(user_rows(store, resolved)),
        },
    }


# ── 站点 ──

@app.get("/api/video/sites")
async def api_video_sites(request: Request):
    require_user(request)
    return {"success": True, "sites": global_rows(get_store(request), with_search=False)}


@app.get("/api/user/sites")
async def api_user_sites(request: Request):
    user = require_user(request)
    store = get_store(request)
    resolved = resolve_user_sites(store, user)
    return {
        "success": True,
        "sites": user_rows(store, resolved),
        "requiresCatApiBase": resolved.requires_provider,
    }


def _require_key(resolved: UserSiteState, key: str):
    if key not in resolved.state.keys():
        raise ApiError(400, "站点不存在")


async def _toggle_user_site(request: Request, field: str) -> dict:
    user = require_user(request)
    body = await read_json(request)
    key = (text_field(body, "key") or "").strip()
    value_name = TOGGLE_FIELDS[field]
    if not key or value_name not in body:
        raise ApiError(400, "参数无效")
    if field == "availability":
        value = normalize_availability(body[value_name])
    else:
        value = parse_any_bool(body[value_name], False)

    def mutate(resolved: UserSiteState):
        _require_key(resolved, key)
        getattr(resolved.state, field)[key] = value

    update_user_sites(get_store(request), user, mutate)
    return {"success": True, "key": key, value_name: value}


@app.post("/api/user/sites/status")
async def api_user_site_status(request: Request):
    return await _toggle_user_site(request, "status")


@app.post("/api/user/sites/home")
async def api_user_site_home(request: Request):
    return await _toggle_user_site(request, "home")


@app.post("/api/user/sites/availability")
async def api_user_site_availability(request: Request):
    return await _toggle_user_site(request, "availability")


@app.post("/api/user/sites/order")
async def api_user_site_order(request: Request):
    user = require_user(request)
    body = await read_json(request)
    if not isinstance(body.get("order"), list):
        raise ApiError(400, "参数无效")
    submitted = parse_string_array(body["order"])

    def mutate(resolved: UserSiteState):
        state = resolved.state
        state.order = normalize_search_order(site_keys(state.sites), submitted)

    store = get_store(request)
    resolved = update_user_sites(store, user, mutate)
    return {"success": True, "sites": user_rows(store, resolved)}


# ── 个人设置 ──

@app.get("/api/user/settings")
async def api_get_user_settings(request: Request):
    user = require_user(request)
    store = get_store(request)
    row = store.get_user_row(user.id)
    return {
        "success": True,
        "settings": {
            "catApiBase": row["cat_api_base"],
            "catApiKey": row["cat_api_key"],
            "catProxy": row["cat_proxy"],
            "searchThreadCount": _thread_count(row),
            "searchSiteOrder": parse_string_array(row["cat_search_order"]),
            "searchCoverSite": (row["cat_search_cover_site"] or "").strip(),
        },
    }


def _any_to_string(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value).strip()
    return ""


def _optional(body: dict, *names: str):
    for name in names:
        if body.get(name) is not None:
            return body[name]
    return None


@app.put("/api/user/settings")
async def api_put_user_settings(request: Request):
    """保存个人 CatPawOpen 设置；附带 sites 时同步个人站点列表"""
    user = require_user(request)
    body = await read_json(request)
    store = get_store(request)
    sites_sync = {"ok": True, "refreshed": False, "count": 0}

    with store.locked_user(user.id) as locked:
        prev = dict(locked.values)

        raw_base = text_field(body, "catApiBase", "cat_api_base")
        raw_base = (prev["cat_api_base"] if raw_base is None else raw_base).strip()
        cat_api_base = normalize_cat_api_base(raw_base)
        if raw_base and not cat_api_base:
            raise ApiError(400, "CatPawOpen 接口地址不是合法 URL")
        if user.role == BASE_ROLE and not cat_api_base:
            raise ApiError(400, "CatPawOpen 接口地址未设置")

        cat_api_key = text_field(body, "catApiKey", "cat_api_key")
        cat_proxy = text_field(body, "catProxy", "cat_proxy")

        thread_count = prev["search_thread_count"]
        raw_threads = _optional(body, "searchThreadCount", "search_thread_count")
        if raw_threads is not None:
            thread_count = None if isinstance(raw_threads, bool) else parse_int(raw_threads)
            if thread_count is None or not 1 <= thread_count <= 50:
                raise ApiError(400, "搜索线程数必须是 1-50 的整数")

        keys = None
        if cat_api_base and isinstance(body.get("sites"), list):
            state = reconcile_state(parse_sites(body["sites"]), SiteState.load(prev, USER_COLUMNS))
            dumped = state.dump(USER_COLUMNS)
            if state_changed(prev, dumped):
                locked.save(dumped)
                sites_sync["refreshed"] = True
            sites_sync["count"] = len(state.sites)
            keys = site_keys(state.sites)
        if keys is None:
            keys = source_keys(store, {**prev, "cat_api_base": cat_api_base}, user.role)

        raw_order = _optional(body, "searchSiteOrder", "search_site_order")
        order_input = parse_string_array(
            raw_order if raw_order is not None else prev["cat_search_order"],
        )
        search_order = normalize_search_order(keys, order_input)
        raw_cover = _optional(body, "searchCoverSite", "search_cover_site")
        cover = _any_to_string(raw_cover) if raw_cover is not None else prev["cat_search_cover_site"]

        values = {
            "cat_api_base": cat_api_base,
            "cat_api_key": (prev["cat_api_key"] if cat_api_key is None else cat_api_key).strip(),
            "cat_proxy": (prev["cat_proxy"] if cat_proxy is None else cat_proxy).strip(),
            "search_thread_count": thread_count,
            "cat_search_order": dump_json(search_order),
            "cat_search_cover_site": resolve_cover_site(search_order, cover),
        }
        changed = {k: v for k, v in values.items() if prev.get(k) != v}
        if changed:
            locked.save(changed)
            log.info("用户 %s 更新了个人设置: %s", user.username, ", ".join(sorted(changed)))

    return {"success": True, "sitesSync": sites_sync}


@app.get("/api/user/pan-login-settings")
async def api_user_pan_settings(request: Request):
    user = require_user(request)
    if user.role != "shared":
        raise ApiError(403, "无权限操作")
    settings = parse_object(get_store(request).get_setting("pan_login_settings"))
    return {"success": True, "settings": settings}


# ── 搜索历史 ──

@app.get("/api/searchhistory")
async def api_search_history(request: Request):
    user = require_user(request)
    return {"success": True, "history": history.list_search_history(get_store(request), user.id)}


@app.post("/api/searchhistory")
async def api_add_search_history(request: Request):
    user = require_user(request)
    body = await read_json(request)
    keyword = (text_field(body, "keyword") or "").strip()
    if not keyword:
        raise ApiError(400, "关键词不能为空")
    history.add_search_history(get_store(request), user.id, keyword)
    return {"success": True}


@app.delete("/api/searchhistory")
async def api_delete_search_history(request: Request):
    user = require_user(request)
    keyword = request.query_params.get("keyword", "").strip()
    history.delete_search_history(get_store(request), user.id, keyword)
    return {"success": True}


# ── 播放记录与收藏 ──

def _limit(request: Request, default: int, upper: int, name: str = "limit") -> int:
    n = parse_int(request.query_params.get(name, ""))
    if n is None or n < 1:
        return default
    return min(n, upper)


def _video_entry(body: dict) -> dict:
    """校验并提取播放/收藏条目，返回 snake_case 字段"""
    entry = {
        "site_key": (text_field(body, "siteKey") or "").strip(),
        "spider_api": (text_field(body, "spiderApi") or "").strip(),
        "video_id": (text_field(body, "videoId") or "").strip(),
        "video_title": (text_field(body, "videoTitle") or "").strip(),
    }
    if not all(entry.values()):
        raise ApiError(400, "参数无效")
    for field in ("siteName", "videoPoster", "videoRemark", "panLabel", "playFlag", "episodeName"):
        value = text_field(body, field)
        if value is not None:
            entry[history.snake(field)] = value.strip()
    episode = parse_int(body.get("episodeIndex"))
    entry["episode_index"] = episode if episode is not None and episode > 0 else 0
    return entry


@app.get("/api/playhistory")
async def api_play_history(request: Request):
    user = require_user(request)
    items = history.list_play_history(get_store(request), user.id, _limit(request, 50, 200))
    return {"success": True, "history": items}


@app.get("/api/playhistory/one")
async def api_play_history_one(request: Request):
    user = require_user(request)
    site_key = request.query_params.get("siteKey", "").strip()
    video_id = request.query_params.get("videoId", "").strip()
    if not site_key or not video_id:
        raise ApiError(400, "参数无效")
    item = history.get_play_history(get_store(request), user.id, site_key, video_id)
    return {"success": True, "history": item}


@app.post("/api/playhistory")
async def api_record_play(request: Request):
    user = require_user(request)
    body = await read_json(request)
    entry = _video_entry(body)
    history.record_play(
        get_store(request), user.id, entry,
        force_poster=parse_any_bool(body.get("forcePoster"), False),
    )
    return {"success": True}


@app.get("/api/favorites")
async def api_favorites(request: Request):
    user = require_user(request)
    items = history.list_favorites(get_store(request), user.id, _limit(request, 50, 200))
    return {"success": True, "favorites": items}


@app.get("/api/favorites/status")
async def api_favorite_status(request: Request):
    user = require_user(request)
    site_key = request.query_params.get("siteKey", "").strip()
    video_id = request.query_params.get("videoId", "").strip()
    if not site_key or not video_id:
        raise ApiError(400, "参数无效")
    return {"success": True, "favorited": history.is_favorited(get_store(request), user.id, site_key, video_id)}


@app.post("/api/favorites/toggle")
async def api_toggle_favorite(request: Request):
    user = require_user(request)
    entry = _video_entry(await read_json(request))
    favorited = history.toggle_favorite(get_store(request), user.id, entry)
    return {"success": True, "favorited": favorited}


# ── 首页聚合 ──

@app.get("/api/home")
async def api_home(request: Request):
    """首页一次取回播放记录、收藏与共享账户的网盘登录设置"""
    user = require_user(request)
    store = get_store(request)
    q = request.query_params
    out = {"success": True}
    if parse_any_bool(q.get("includePlayHistory", ""), True):
        out["playHistory"] = history.list_play_history(
            store, user.id, _limit(request, 20, 50, "playHistoryLimit"),
        )
    if parse_any_bool(q.get("includeFavorites", ""), True):
        out["favorites"] = history.list_favorites(
            store, user.id, _limit(request, 50, 200, "favoritesLimit"),
        )
    if parse_any_bool(q.get("includePanLoginSettings", ""), True) and user.role == "shared":
        out["panLoginSettings"] = parse_object(store.get_setting("pan_login_settings"))
    return out
