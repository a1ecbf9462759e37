"""站点叠加状态：站点列表 + 启用/首页/排序/可用性"""

from dataclasses import dataclass, field

from sites import (
    Site,
    dump_json,
    parse_availability_map,
    parse_bool_map,
    parse_sites,
    parse_string_array,
)

# 字段 -> 全局设置键
GLOBAL_KEYS = {
    "sites": "video_source_sites",
    "status": "video_source_site_status",
    "home": "video_source_site_home",
    "order": "video_source_site_order",
    "availability": "video_source_site_availability",
}
GLOBAL_SEARCH_KEY = "video_source_site_search"
GLOBAL_ERROR_KEY = "video_source_site_error"

# 字段 -> users 表列
USER_COLUMNS = {
    "sites": "cat_sites",
    "status": "cat_site_status",
    "home": "cat_site_home",
    "order": "cat_site_order",
    "availability": "cat_site_availability",
}


@dataclass
class SiteState:
    sites: list[Site] = field(default_factory=list)
    status: dict[str, bool] = field(default_factory=dict)
    home: dict[str, bool] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    availability: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, values: dict, names: dict) -> "SiteState":
        """从存储的 JSON 文本解析；names 为字段到键名/列名的映射"""
        return cls(
            sites=parse_sites(values.get(names["sites"], "")),
            status=parse_bool_map(values.get(names["status"], "")),
            home=parse_bool_map(values.get(names["home"], "")),
            order=parse_string_array(values.get(names["order"], "")),
            availability=parse_availability_map(values.get(names["availability"], "")),
        )

    def dump(self, names: dict) -> dict[str, str]:
        return {
            names["sites"]: dump_json([s.to_dict() for s in self.sites]),
            names["status"]: dump_json(self.status),
            names["home"]: dump_json(self.home),
            names["order"]: dump_json(self.order),
            names["availability"]: dump_json(self.availability),
        }

    def keys(self) -> set[str]:
        return {s.key for s in self.sites}


def state_changed(prev: dict, dumped: dict[str, str]) -> bool:
    """五个字段的序列化全部与已存值一致时无需写入"""
    return any(prev.get(k) != v for k, v in dumped.items())
