"""搜索站点顺序与封面站点"""


def normalize_search_order(valid_keys: list[str], submitted: list[str]) -> list[str]:
    """丢弃无效 key、去重，再按来源顺序补齐缺失的 key"""
    key_set = {k for k in valid_keys if k}
    out: list[str] = []
    seen: set[str] = set()
    for k in submitted:
        key = k.strip()
        if not key or key not in key_set or key in seen:
            continue
        seen.add(key)
        out.append(key)
    for key in valid_keys:
        if key and key not in seen:
            seen.add(key)
            out.append(key)
    return out


def resolve_cover_site(order: list[str], candidate: str) -> str:
    candidate = (candidate or "").strip()
    if candidate and candidate in order:
        return candidate
    return order[0] if order else ""


def resolve_global_cover_site(rows: list[dict], order: list[str], candidate: str) -> str:
    """管理后台：候选无效时优先取第一个已启用站点"""
    candidate = (candidate or "").strip()
    if candidate and any(r["key"] == candidate for r in rows):
        return candidate
    for r in rows:
        if r["enabled"]:
            return r["key"]
    return order[0] if order else ""
