"""按用户角色解析站点来源

有个人 CatPawOpen 地址的用户使用自己导入的站点列表；管理员与共享用户未配置时
回落到全局站点列表；普通用户未配置时没有可用站点。启用/首页/排序/可用性
始终来自用户自己的行，切换来源时个人偏好仍然保留。
"""

import logging
from dataclasses import dataclass
from typing import Callable

from sites import parse_bool_map, parse_sites, parse_string_map, site_keys
from sites.merge import merge_for_display
from sites.reconcile import reconcile_state
from sites.state import (
    GLOBAL_ERROR_KEY,
    GLOBAL_KEYS,
    GLOBAL_SEARCH_KEY,
    USER_COLUMNS,
    SiteState,
    state_changed,
)

log = logging.getLogger(__name__)

BASE_ROLE = "user"


@dataclass
class UserSiteState:
    state: SiteState
    has_personal_provider: bool
    can_fallback_to_global: bool

    @property
    def has_source(self) -> bool:
        return self.has_personal_provider or self.can_fallback_to_global

    @property
    def requires_provider(self) -> bool:
        return not self.has_source


# ── 全局站点 ──

def global_state(store) -> SiteState:
    return SiteState.load(store.get_settings(GLOBAL_KEYS.values()), GLOBAL_KEYS)


def global_rows(store, with_search: bool = True) -> list[dict]:
    state = global_state(store)
    search = errors = None
    if with_search:
        search = parse_bool_map(store.get_setting(GLOBAL_SEARCH_KEY))
        errors = parse_string_map(store.get_setting(GLOBAL_ERROR_KEY))
    return merge_for_display(
        state.sites, state.status, state.home, state.order, state.availability, search, errors,
    )


# ── 用户站点 ──

def source_sites(store, row: dict, role: str):
    """返回 (站点列表, 是否有个人地址, 是否可回落全局)"""
    has_personal = bool((row.get("cat_api_base") or "").strip())
    can_fallback = role != BASE_ROLE
    if has_personal:
        sites = parse_sites(row.get("cat_sites") or "")
    elif can_fallback:
        sites = parse_sites(store.get_setting(GLOBAL_KEYS["sites"]))
    else:
        sites = []
    return sites, has_personal, can_fallback


def source_keys(store, row: dict, role: str) -> list[str]:
    """搜索设置可用的站点 key；普通用户未配置时沿用已存的个人站点"""
    sites, has_personal, can_fallback = source_sites(store, row, role)
    if not has_personal and not can_fallback:
        sites = parse_sites(row.get("cat_sites") or "")
    return site_keys(sites)


def _resolve(store, row: dict, role: str) -> UserSiteState:
    sites, has_personal, can_fallback = source_sites(store, row, role)
    state = SiteState.load(row, USER_COLUMNS)
    if has_personal or can_fallback:
        state = reconcile_state(sites, state)
    else:
        state.sites = []
    return UserSiteState(
        state=state,
        has_personal_provider=has_personal,
        can_fallback_to_global=can_fallback,
    )


def _persist(locked, resolved: UserSiteState) -> bool:
    dumped = resolved.state.dump(USER_COLUMNS)
    if not resolved.has_source:
        # 没有站点来源时不覆盖已存的个人站点列表
        dumped.pop(USER_COLUMNS["sites"])
    if not state_changed(locked.values, dumped):
        return False
    locked.save(dumped)
    return True


def update_user_sites(store, user, mutate: Callable[[UserSiteState], None] | None = None) -> UserSiteState:
    """在用户行写锁内解析站点，可选地修改叠加状态，有变化时写回"""
    with store.locked_user(user.id) as locked:
        resolved = _resolve(store, locked.values, user.role)
        if mutate is not None:
            mutate(resolved)
        if _persist(locked, resolved):
            log.info("用户 %s 的站点状态已更新 (%d 个站点)", user.username, len(resolved.state.sites))
    return resolved


def resolve_user_sites(store, user) -> UserSiteState:
    return update_user_sites(store, user)


def user_rows(store, resolved: UserSiteState) -> list[dict]:
    state = resolved.state
    return merge_for_display(
        state.sites, state.status, state.home, state.order, state.availability,
        parse_bool_map(store.get_setting(GLOBAL_SEARCH_KEY)),
        parse_string_map(store.get_setting(GLOBAL_ERROR_KEY)),
    )
