"""视频源站点模型与 JSON 解析"""

import json
import math
from dataclasses import dataclass

AVAILABILITY_VALUES = frozenset({
    "valid", "invalid", "unknown", "unchecked", "category_error", "search_error",
})
UNCHECKED = "unchecked"

CONFIG_CENTER_SPIDER = "baseset"


@dataclass
class Site:
    """视频源站点"""
    key: str
    name: str
    api: str
    type: int | None = None

    def to_dict(self) -> dict:
        out = {"key": self.key, "name": self.name, "api": self.api}
        if self.type is not None:
            out["type"] = self.type
        return out


# ── 站点规则 ──

def normalize_availability(value) -> str:
    raw = value.strip() if isinstance(value, str) else ""
    return raw if raw in AVAILABILITY_VALUES else UNCHECKED


def extract_spider_name(api: str) -> str:
    """从 /spider/<name>/ 形式的接口路径中取出 spider 名"""
    marker = "/spider/"
    raw = (api or "").strip()
    i = raw.find(marker)
    if i < 0:
        return ""
    rest = raw[i + len(marker):]
    j = rest.find("/")
    if j < 0:
        return ""
    return rest[:j]


def default_home(site: Site) -> bool:
    return extract_spider_name(site.api) != CONFIG_CENTER_SPIDER


def is_config_center(site: Site) -> bool:
    """配置中心伪站点不参与搜索"""
    api = site.api.strip()
    key = site.key.strip().lower()
    return (
        "/spider/baseset/" in api
        or api.endswith("/spider/baseset")
        or CONFIG_CENTER_SPIDER in key
    )


def site_keys(sites: list[Site]) -> list[str]:
    return [s.key for s in sites if s.key]


# ── JSON 解析（宽松，出错时退化为空） ──

def _load(value):
    if isinstance(value, (bytes, str)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def dump_json(value) -> str:
    """紧凑且键有序的序列化，相同状态得到相同字节"""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def parse_int(value) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return math.floor(value)
    if isinstance(value, str):
        try:
            f = float(value.strip())
        except ValueError:
            return None
        if math.isnan(f) or math.isinf(f):
            return None
        return math.floor(f)
    return None


def parse_any_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on"):
            return True
        if s in ("0", "false", "no", "off"):
            return False
    return default


def parse_sites(value) -> list[Site]:
    """解析站点数组（JSON 文本或已解码列表），去空去重，保留首次出现"""
    raw = _load(value)
    if not isinstance(raw, list):
        return []
    out: list[Site] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            continue
        key = item.get("key")
        api = item.get("api")
        name = item.get("name")
        key = key.strip() if isinstance(key, str) else ""
        api = api.strip() if isinstance(api, str) else ""
        if not key or not api or key in seen:
            continue
        seen.add(key)
        site_type = item.get("type")
        out.append(Site(
            key=key,
            name=name if isinstance(name, str) else "",
            api=api,
            type=parse_int(site_type) if site_type is not None else None,
        ))
    return out


def parse_array(value) -> list:
    raw = _load(value)
    return raw if isinstance(raw, list) else []


def parse_object(value) -> dict:
    raw = _load(value)
    return raw if isinstance(raw, dict) else {}


def parse_bool_map(value) -> dict[str, bool]:
    out: dict[str, bool] = {}
    for k, v in parse_object(value).items():
        if not k:
            continue
        if isinstance(v, bool):
            out[k] = v
        elif isinstance(v, str):
            s = v.strip()
            out[k] = s == "1" or s.lower() == "true"
        elif isinstance(v, (int, float)):
            out[k] = v != 0
        else:
            out[k] = False
    return out


def parse_string_array(value) -> list[str]:
    raw = _load(value)
    if not isinstance(raw, list):
        return []
    out: list[str] = []
    seen: set[str] = set()
    for v in raw:
        if not isinstance(v, str):
            continue
        s = v.strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def parse_string_map(value) -> dict[str, str]:
    out: dict[str, str] = {}
    for k, v in parse_object(value).items():
        key = k.strip()
        if not key or not isinstance(v, str):
            continue
        val = v.strip()
        if val:
            out[key] = val
    return out


def parse_availability_map(value) -> dict[str, str]:
    out: dict[str, str] = {}
    for k, v in parse_object(value).items():
        key = k.strip()
        if key:
            out[key] = normalize_availability(v)
    return out
