"""站点列表刷新时的叠加状态合并

新站点列表到来时保留用户对已有站点的启用、首页、排序与可用性设置，
清理已消失站点的残留项，并为新站点补全默认值。
"""

from sites import UNCHECKED, Site, default_home, normalize_availability
from sites.state import SiteState


def normalize_sites(sites: list[Site]) -> list[Site]:
    """去除 key/api 为空的条目，按 key 去重（保留首次出现）"""
    out: list[Site] = []
    seen: set[str] = set()
    for s in sites:
        key = s.key.strip()
        api = s.api.strip()
        if not key or not api or key in seen:
            continue
        seen.add(key)
        out.append(Site(key=key, name=s.name, api=api, type=s.type))
    return out


def _filter_map(prev: dict, keys: set[str]) -> dict:
    out = {}
    for k, v in prev.items():
        key = k.strip()
        if key and key in keys:
            out[key] = v
    return out


def reconcile_order(prev_order: list[str], keys_in_new_order: list[str]) -> list[str]:
    """保留已有排序；新 key 插入到它在新列表中前一个已排序 key 之后"""
    key_set = set(keys_in_new_order)
    next_order: list[str] = []
    for k in prev_order:
        key = k.strip()
        if key and key in key_set and key not in next_order:
            next_order.append(key)

    last_index = -1
    for key in keys_in_new_order:
        if key in next_order:
            last_index = next_order.index(key)
            continue
        insert_at = min(last_index + 1, len(next_order))
        next_order.insert(insert_at, key)
        last_index = insert_at
    return next_order


def reconcile_sites(
    next_sites: list[Site],
    prev_status: dict[str, bool],
    prev_home: dict[str, bool],
    prev_order: list[str],
    prev_availability: dict[str, str],
) -> SiteState:
    sites = normalize_sites(next_sites)
    keys_in_new_order = [s.key for s in sites]
    key_set = set(keys_in_new_order)

    status = _filter_map(prev_status, key_set)
    home = _filter_map(prev_home, key_set)
    availability = {
        k: normalize_availability(v)
        for k, v in _filter_map(prev_availability, key_set).items()
    }

    for s in sites:
        status.setdefault(s.key, True)
        home.setdefault(s.key, default_home(s))
        availability.setdefault(s.key, UNCHECKED)

    return SiteState(
        sites=sites,
        status=status,
        home=home,
        order=reconcile_order(prev_order, keys_in_new_order),
        availability=availability,
    )


def reconcile_state(next_sites: list[Site], prev: SiteState) -> SiteState:
    return reconcile_sites(next_sites, prev.status, prev.home, prev.order, prev.availability)
