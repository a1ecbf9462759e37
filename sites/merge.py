"""站点列表与叠加状态合并为接口返回的行"""

from sites import UNCHECKED, Site, default_home, is_config_center, normalize_availability


def apply_site_order(sites: list[Site], order: list[str]) -> list[Site]:
    """按排序列表稳定排序，未排序的站点按原顺序排在最后"""
    if not sites or not order:
        return list(sites)
    rank = {k: i for i, k in enumerate(order)}
    unranked = len(order)
    decorated = sorted(
        enumerate(sites),
        key=lambda item: (rank.get(item[1].key, unranked), item[0]),
    )
    return [s for _, s in decorated]


def merge_for_display(
    sites: list[Site],
    status: dict[str, bool],
    home: dict[str, bool],
    order: list[str],
    availability: dict[str, str],
    search: dict[str, bool] | None = None,
    errors: dict[str, str] | None = None,
) -> list[dict]:
    """生成 {key, name, api, type?, enabled, home, availability, search?, error?}

    只有传入 search 时（全局站点场景）才输出 search 与 error 字段。
    """
    rows = []
    for s in apply_site_order(sites, order):
        row = {"key": s.key, "name": s.name, "api": s.api}
        if s.type is not None:
            row["type"] = s.type
        row["enabled"] = status.get(s.key, True)
        row["home"] = home.get(s.key, default_home(s))
        row["availability"] = normalize_availability(availability.get(s.key, UNCHECKED))
        if search is not None:
            row["search"] = False if is_config_center(s) else search.get(s.key, True)
            message = (errors or {}).get(s.key, "").strip()
            if message:
                row["error"] = message
        rows.append(row)
    return rows


def home_sites(rows: list[dict]) -> list[dict]:
    """首页展示的站点：已启用且开启首页"""
    return [
        {"key": r["key"], "name": r["name"], "api": r["api"]}
        for r in rows
        if r["enabled"] and r["home"]
    ]
