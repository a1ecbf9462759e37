"""管理后台接口：站点与服务设置、全局视频源站点、搜索设置、网盘登录、用户管理（仅 admin）"""

import logging

from fastapi import APIRouter, Request

import auth
from helpers import (
    ApiError,
    get_store,
    normalize_cat_api_base,
    normalize_http_base,
    normalize_mount_path,
    read_json,
    require_admin,
    text_field,
)
from sites import (
    dump_json,
    normalize_availability,
    parse_any_bool,
    parse_array,
    parse_bool_map,
    parse_object,
    parse_sites,
    parse_string_array,
    parse_string_map,
    site_keys,
)
from sites.reconcile import reconcile_state
from sites.resolve import global_rows
from sites.search import normalize_search_order, resolve_global_cover_site
from sites.state import GLOBAL_ERROR_KEY, GLOBAL_KEYS, GLOBAL_SEARCH_KEY, SiteState

log = logging.getLogger(__name__)
router = APIRouter(prefix="/dashboard")

PROXY_SETTINGS = {
    "doubanDataProxy": "douban_data_proxy",
    "doubanDataCustom": "douban_data_custom",
    "doubanImgProxy": "douban_img_proxy",
    "doubanImgCustom": "douban_img_custom",
}
SEARCH_ORDER_KEY = "video_source_search_order"
SEARCH_COVER_KEY = "video_source_search_cover_site"
PAN_SETTINGS_KEY = "pan_login_settings"
PAN_TYPES = ("cookie", "account")
CAT_API_BASE_KEY = "catpawopen_api_base"
VIDEO_SOURCE_URL_KEY = "video_source_url"
PANS_LIST_KEY = "catpawopen_pans_list"
MAGIC_RULES = {
    "episodeCleanRegexRules": "magic_episode_clean_regex_rules",
    "episodeRules": "magic_episode_rules",
    "aggregateRules": "magic_aggregate_rules",
    "aggregateRegexRules": "magic_aggregate_regex_rules",
}
MAX_RULE_LEN = 1000


# ── 站点设置 ──

def _flag(store, key: str) -> bool:
    return store.get_setting(key).strip() == "1"


@router.get("/site/settings")
async def get_site_settings(request: Request):
    require_admin(request)
    store = get_store(request)
    out = {"siteName": store.get_setting("site_name")}
    for field, key in PROXY_SETTINGS.items():
        out[field] = store.get_setting(key)
    out.update({
        "catPawOpenApiBase": store.get_setting(CAT_API_BASE_KEY),
        "openListApiBase": store.get_setting("openlist_api_base"),
        "openListToken": store.get_setting("openlist_token"),
        "openListQuarkTvMode": _flag(store, "openlist_quark_tv_mode"),
        "openListQuarkTvMount": store.get_setting("openlist_quark_tv_mount"),
        "goProxyEnabled": _flag(store, "goproxy_enabled"),
        "goProxyAutoSelect": _flag(store, "goproxy_auto_select"),
        "goProxyServers": goproxy_servers(store.get_setting("goproxy_servers")),
    })
    return {"success": True, "settings": out}


@router.post("/site/settings")
async def save_site_settings(request: Request):
    """站点名称留空时保持原值"""
    require_admin(request)
    body = await read_json(request)
    values = {key: (text_field(body, field) or "").strip() for field, key in PROXY_SETTINGS.items()}
    if not values["douban_data_proxy"] or not values["douban_img_proxy"]:
        raise ApiError(400, "豆瓣代理方式不能为空")
    site_name = (text_field(body, "siteName") or "").strip()
    if site_name:
        values["site_name"] = site_name
    get_store(request).set_settings(values)
    return {"success": True}


@router.post("/catpawopen/save")
async def save_catpawopen(request: Request):
    """全局 CatPawOpen 地址，管理员与共享用户未配置个人地址时使用"""
    require_admin(request)
    body = await read_json(request)
    normalized = normalize_cat_api_base(text_field(body, "catPawOpenApiBase") or "")
    if not normalized:
        raise ApiError(400, "CatPawOpen 接口地址不是合法 URL")

    prev: dict[str, str] = {}

    def mutate(current: dict) -> dict:
        prev.update(current)
        return {CAT_API_BASE_KEY: normalized}

    get_store(request).update_settings([CAT_API_BASE_KEY], mutate)
    changed = prev[CAT_API_BASE_KEY].strip() != normalized
    if changed:
        log.info("全局 CatPawOpen 地址 -> %s", normalized)
    return {"success": True, "apiBaseChanged": changed}


@router.post("/openlist/save")
async def save_openlist(request: Request):
    require_admin(request)
    body = await read_json(request)
    api_base = (text_field(body, "openListApiBase") or "").strip()
    if api_base:
        api_base = normalize_http_base(api_base)
        if not api_base:
            raise ApiError(400, "OpenList 服务器地址不是合法 URL")
        api_base += "/"
    get_store(request).set_settings({
        "openlist_api_base": api_base,
        "openlist_token": (text_field(body, "openListToken") or "").strip(),
        "openlist_quark_tv_mode": "1" if parse_any_bool(body.get("openListQuarkTvMode"), False) else "0",
        "openlist_quark_tv_mount": normalize_mount_path(text_field(body, "openListQuarkTvMount") or ""),
    })
    return {"success": True}


def goproxy_servers(value) -> list[dict]:
    """GoProxy 服务器列表：字符串或 {base, pans} 对象，按地址去重"""
    raw = value if isinstance(value, list) else parse_array(value)
    out = []
    seen: set[str] = set()
    for item in raw:
        pans = {}
        if isinstance(item, str):
            base = normalize_http_base(item)
        elif isinstance(item, dict):
            base = normalize_http_base(item["base"]) if isinstance(item.get("base"), str) else ""
            pans = item.get("pans") if isinstance(item.get("pans"), dict) else {}
        else:
            continue
        if not base or base in seen:
            continue
        seen.add(base)
        out.append({
            "base": base,
            "pans": {
                "baidu": parse_any_bool(pans.get("baidu"), True),
                "quark": parse_any_bool(pans.get("quark"), True),
            },
        })
    return out


@router.post("/goproxy/save")
async def save_goproxy(request: Request):
    require_admin(request)
    body = await read_json(request)
    servers = goproxy_servers(body.get("goProxyServers", body.get("goProxyServersJson")))
    get_store(request).set_settings({
        "goproxy_enabled": "1" if parse_any_bool(body.get("goProxyEnabled"), False) else "0",
        "goproxy_auto_select": "1" if parse_any_bool(body.get("goProxyAutoSelect"), False) else "0",
        "goproxy_servers": dump_json(servers),
    })
    return {"success": True, "goProxyServers": servers}


# ── 视频源 ──

def pans_list(value) -> list[dict]:
    out = []
    seen: set[str] = set()
    for item in value if isinstance(value, list) else parse_array(value):
        if not isinstance(item, dict) or not isinstance(item.get("key"), str):
            continue
        key = item["key"].strip()
        if not key or key in seen:
            continue
        seen.add(key)
        name = item.get("name")
        out.append({
            "key": key,
            "name": name if isinstance(name, str) else "",
            "enable": parse_any_bool(item.get("enable"), False),
        })
    return out


@router.get("/video/source/settings")
async def get_video_source_settings(request: Request):
    require_admin(request)
    return {"success": True, "videoSourceUrl": get_store(request).get_setting(VIDEO_SOURCE_URL_KEY)}


@router.post("/video/source/save")
async def save_video_source(request: Request):
    require_admin(request)
    body = await read_json(request)
    store = get_store(request)
    store.set_setting(VIDEO_SOURCE_URL_KEY, (text_field(body, "videoSourceUrl") or "").strip())
    return {
        "success": True,
        "sites": global_rows(store),
        "sitesRefreshed": False,
        "pans": pans_list(store.get_setting(PANS_LIST_KEY)),
    }


@router.get("/video/pans/list")
async def get_pans_list(request: Request):
    require_admin(request)
    return {"success": True, "pans": pans_list(get_store(request).get_setting(PANS_LIST_KEY))}


@router.post("/video/pans/list")
async def save_pans_list(request: Request):
    require_admin(request)
    body = await read_json(request)
    pans = pans_list(body.get("list"))
    get_store(request).set_setting(PANS_LIST_KEY, dump_json(pans))
    return {"success": True, "pans": pans}


# ── 全局视频源站点 ──

@router.get("/video/source/sites")
async def list_sites(request: Request):
    require_admin(request)
    return {"success": True, "sites": global_rows(get_store(request))}


@router.post("/video/source/sites/import")
async def import_sites(request: Request):
    admin = require_admin(request)
    body = await read_json(request)
    sites = parse_sites(body.get("sites"))
    if not sites:
        raise ApiError(400, "站点列表为空或格式错误")

    def mutate(current: dict) -> dict:
        state = reconcile_state(sites, SiteState.load(current, GLOBAL_KEYS))
        return state.dump(GLOBAL_KEYS)

    store = get_store(request)
    changed = store.update_settings(GLOBAL_KEYS.values(), mutate)
    if changed:
        log.info("%s 导入了 %d 个全局站点", admin.username, len(sites))
    return {"success": True, "sitesRefreshed": bool(changed), "sites": global_rows(store)}


def _require_site_key(current: dict, key: str):
    if key not in site_keys(parse_sites(current.get(GLOBAL_KEYS["sites"], ""))):
        raise ApiError(400, "站点不存在")


def _toggle_body(body: dict, field: str) -> tuple[str, bool]:
    key = (text_field(body, "key") or "").strip()
    if not key or field not in body:
        raise ApiError(400, "参数无效")
    return key, parse_any_bool(body[field], False)


async def _toggle_site(request: Request, map_key: str, field: str = "enabled") -> dict:
    """切换单个站点的开关；field 为请求体中的值字段名，响应中原样返回"""
    require_admin(request)
    key, enabled = _toggle_body(await read_json(request), field)

    def mutate(current: dict) -> dict:
        _require_site_key(current, key)
        flags = parse_bool_map(current[map_key])
        flags[key] = enabled
        return {map_key: dump_json(flags)}

    get_store(request).update_settings([GLOBAL_KEYS["sites"], map_key], mutate)
    return {"success": True, "key": key, field: enabled}


@router.post("/video/source/sites/status")
async def toggle_site_status(request: Request):
    return await _toggle_site(request, GLOBAL_KEYS["status"])


@router.post("/video/source/sites/home")
async def toggle_site_home(request: Request):
    return await _toggle_site(request, GLOBAL_KEYS["home"], "home")


@router.post("/video/source/sites/search")
async def toggle_site_search(request: Request):
    return await _toggle_site(request, GLOBAL_SEARCH_KEY)


@router.post("/video/source/sites/order")
async def save_site_order(request: Request):
    require_admin(request)
    body = await read_json(request)
    if not isinstance(body.get("order"), list):
        raise ApiError(400, "参数无效")
    submitted = parse_string_array(body["order"])

    def mutate(current: dict) -> dict:
        keys = site_keys(parse_sites(current[GLOBAL_KEYS["sites"]]))
        return {GLOBAL_KEYS["order"]: dump_json(normalize_search_order(keys, submitted))}

    store = get_store(request)
    store.update_settings([GLOBAL_KEYS["sites"], GLOBAL_KEYS["order"]], mutate)
    return {"success": True, "sites": global_rows(store)}


@router.post("/video/source/sites/check")
async def save_check_results(request: Request):
    """保存可用性检测结果；invalid 的站点同时被停用"""
    require_admin(request)
    body = await read_json(request)
    raw_results = parse_object(body.get("results"))
    messages = parse_string_map(body.get("errors"))
    if not raw_results:
        raise ApiError(400, "检测结果为空")

    keys = [GLOBAL_KEYS["sites"], GLOBAL_KEYS["status"], GLOBAL_KEYS["availability"], GLOBAL_ERROR_KEY]
    applied: dict[str, str] = {}

    def mutate(current: dict) -> dict:
        valid_keys = set(site_keys(parse_sites(current[GLOBAL_KEYS["sites"]])))
        state = SiteState.load(current, GLOBAL_KEYS)
        errors = parse_string_map(current[GLOBAL_ERROR_KEY])
        applied.clear()
        for k, v in raw_results.items():
            key = k.strip()
            if key not in valid_keys:
                continue
            value = normalize_availability(v)
            applied[key] = value
            state.availability[key] = value
            if value == "invalid":
                state.status[key] = False
            if key in messages:
                errors[key] = messages[key]
            elif value == "valid":
                errors.pop(key, None)
        if not applied:
            raise ApiError(400, "检测结果中没有已知站点")
        return {
            GLOBAL_KEYS["status"]: dump_json(state.status),
            GLOBAL_KEYS["availability"]: dump_json(state.availability),
            GLOBAL_ERROR_KEY: dump_json(errors),
        }

    store = get_store(request)
    store.update_settings(keys, mutate)
    invalid = sum(1 for v in applied.values() if v == "invalid")
    if invalid:
        log.warning("可用性检测: %d 个站点不可用，已停用", invalid)
    return {"success": True, "results": applied, "sites": global_rows(store)}


# ── 全局搜索设置 ──

def _search_settings(store, order_input: list[str], cover: str) -> dict:
    rows = global_rows(store)
    order = normalize_search_order([r["key"] for r in rows], order_input)
    return {
        "order": order,
        "coverSite": resolve_global_cover_site(rows, order, cover),
    }


@router.get("/search/settings")
async def get_search_settings(request: Request):
    require_admin(request)
    store = get_store(request)
    search = _search_settings(
        store,
        parse_string_array(store.get_setting(SEARCH_ORDER_KEY)),
        store.get_setting(SEARCH_COVER_KEY),
    )
    return {"success": True, "search": search, "sites": global_rows(store)}


@router.post("/search/settings")
async def save_search_settings(request: Request):
    require_admin(request)
    body = await read_json(request)
    store = get_store(request)
    search = _search_settings(
        store,
        parse_string_array(body.get("order")),
        text_field(body, "coverSite") or "",
    )
    store.set_settings({
        SEARCH_ORDER_KEY: dump_json(search["order"]),
        SEARCH_COVER_KEY: search["coverSite"],
    })
    return {"success": True, "search": search}


# ── 网盘登录 ──

@router.get("/pan/settings")
async def get_pan_settings(request: Request):
    require_admin(request)
    settings = parse_object(get_store(request).get_setting(PAN_SETTINGS_KEY))
    key = request.query_params.get("key", "").strip()
    if key:
        return {"success": True, "settings": {key: settings.get(key) or {}}}
    return {"success": True, "settings": settings}


@router.post("/pan/settings")
async def save_pan_settings(request: Request):
    """合并写入某个网盘的 Cookie 或账号，另一种登录方式的已存字段保留"""
    require_admin(request)
    body = await read_json(request)
    key = (text_field(body, "key") or "").strip()
    kind = (text_field(body, "type") or "").strip()
    if not key or kind not in PAN_TYPES:
        raise ApiError(400, "参数无效")
    if kind == "cookie":
        payload = {"cookie": (text_field(body, "cookie") or "").strip()}
    else:
        payload = {
            "username": (text_field(body, "username") or "").strip(),
            "password": text_field(body, "password") or "",
        }
    entry: dict = {}

    def mutate(current: dict) -> dict:
        settings = parse_object(current[PAN_SETTINGS_KEY])
        merged = settings.get(key) if isinstance(settings.get(key), dict) else {}
        merged.update(payload)
        settings[key] = merged
        entry.update(merged)
        return {PAN_SETTINGS_KEY: dump_json(settings)}

    get_store(request).update_settings([PAN_SETTINGS_KEY], mutate)
    return {"success": True, "settings": {key: entry}}


# ── 剧集/聚合规则 ──

def _rule_list(value) -> list[str]:
    out: list[str] = []
    for rule in parse_string_array(value):
        if len(rule) <= MAX_RULE_LEN:
            out.append(rule)
    return out


def _magic_settings(store) -> dict:
    out = {field: parse_string_array(store.get_setting(key)) for field, key in MAGIC_RULES.items()}
    clean = out["episodeCleanRegexRules"]
    out["episodeCleanRegex"] = clean[0] if clean else ""
    return out


@router.get("/magic/settings")
async def get_magic_settings(request: Request):
    require_admin(request)
    return {"success": True, **_magic_settings(get_store(request))}


@router.post("/magic/settings")
async def save_magic_settings(request: Request):
    require_admin(request)
    body = await read_json(request)
    values = {key: _rule_list(body.get(field)) for field, key in MAGIC_RULES.items()}
    clean_key = MAGIC_RULES["episodeCleanRegexRules"]
    single = (text_field(body, "episodeCleanRegex") or "").strip()
    if not values[clean_key] and single:
        values[clean_key] = _rule_list([single])
    store = get_store(request)
    store.set_settings({key: dump_json(rules) for key, rules in values.items()})
    return {"success": True, **_magic_settings(store)}


# ── 用户管理 ──

@router.get("/user/list")
async def list_users(request: Request):
    require_admin(request)
    users = [
        {
            "username": u["username"],
            "role": u["role"] or "user",
            "status": u["status"] or "active",
            "catApiBase": u["cat_api_base"],
            "catProxy": u["cat_proxy"],
        }
        for u in auth.list_users()
    ]
    return {"success": True, "users": users}


def _cat_api_base(body: dict) -> str | None:
    raw = text_field(body, "catApiBase", "cat_api_base")
    if raw is None:
        return None
    if not raw.strip():
        return ""
    normalized = normalize_cat_api_base(raw)
    if not normalized:
        raise ApiError(400, "CatPawOpen 接口地址不是合法 URL")
    return normalized


@router.post("/user/add")
async def add_user(request: Request):
    require_admin(request)
    body = await read_json(request)
    ok, msg = auth.add_user(
        (text_field(body, "username") or "").strip(),
        text_field(body, "password") or "",
        role=(text_field(body, "role") or "user").strip(),
        cat_api_base=_cat_api_base(body) or "",
        cat_proxy=(text_field(body, "catProxy", "cat_proxy") or "").strip(),
    )
    if not ok:
        raise ApiError(400, msg)
    return {"success": True, "message": msg}


@router.post("/user/ban")
async def ban_user(request: Request):
    require_admin(request)
    body = await read_json(request)
    ok, status = auth.toggle_ban((text_field(body, "username") or "").strip())
    if not ok:
        raise ApiError(400, "用户不存在或不可操作")
    return {"success": True, "status": status}


@router.post("/user/delete")
async def delete_user(request: Request):
    require_admin(request)
    body = await read_json(request)
    deleted = auth.delete_user((text_field(body, "username") or "").strip())
    if deleted is None:
        raise ApiError(400, "用户不存在或不可删除")
    return {"success": True, **deleted}


@router.post("/user/update")
async def update_user(request: Request):
    require_admin(request)
    body = await read_json(request)
    username = (text_field(body, "username") or "").strip()
    if not username:
        raise ApiError(400, "参数无效")
    cat_proxy = text_field(body, "catProxy", "cat_proxy")
    ok, msg, info = auth.update_user(
        username,
        new_username=(text_field(body, "newUsername") or "").strip(),
        new_password=text_field(body, "newPassword") or "",
        role=(text_field(body, "role") or "").strip(),
        cat_api_base=_cat_api_base(body),
        cat_proxy=cat_proxy.strip() if cat_proxy is not None else None,
    )
    if not ok:
        raise ApiError(400, msg)
    return {"success": True, "user": info}
