from sites import Site, parse_sites
from sites.merge import apply_site_order, home_sites, merge_for_display
from sites.reconcile import reconcile_sites


def keys(sites):
    return [s.key for s in sites]


def test_order_puts_unranked_sites_last_in_input_order():
    sites = [Site(k, k, f"/spider/{k}/") for k in "abcd"]
    assert keys(apply_site_order(sites, ["c", "a", "zz"])) == ["c", "a", "b", "d"]
    assert keys(apply_site_order(sites, [])) == ["a", "b", "c", "d"]


def test_rows_use_defaults_for_missing_overlays():
    sites = [Site("a", "A", "/spider/a/", 1), Site("b", "B", "/spider/baseset/")]
    rows = merge_for_display(sites, {}, {}, [], {"a": "weird"})
    assert rows == [
        {"key": "a", "name": "A", "api": "/spider/a/", "type": 1,
         "enabled": True, "home": True, "availability": "unchecked"},
        {"key": "b", "name": "B", "api": "/spider/baseset/",
         "enabled": True, "home": False, "availability": "unchecked"},
    ]


def test_search_and_error_only_in_global_listing():
    sites = [Site("a", "A", "/spider/a/"), Site("b", "B", "/spider/b/")]
    rows = merge_for_display(
        sites, {"a": False}, {}, ["b"], {"b": "valid"},
        search={"a": False}, errors={"a": "timeout", "b": "  "},
    )
    assert [r["key"] for r in rows] == ["b", "a"]
    assert rows[0]["search"] is True and "error" not in rows[0]
    assert rows[1]["search"] is False and rows[1]["error"] == "timeout"
    assert rows[1]["enabled"] is False


def test_config_center_never_searchable():
    sites = [Site("cfg", "配置", "/spider/baseset/")]
    rows = merge_for_display(sites, {}, {}, [], {}, search={"cfg": True})
    assert rows[0]["search"] is False


def test_home_sites_keep_enabled_home_rows():
    rows = [
        {"key": "a", "name": "A", "api": "/a", "enabled": True, "home": True},
        {"key": "b", "name": "B", "api": "/b", "enabled": False, "home": True},
        {"key": "c", "name": "C", "api": "/c", "enabled": True, "home": False},
    ]
    assert home_sites(rows) == [{"key": "a", "name": "A", "api": "/a"}]


def test_fresh_import_listing():
    sites = parse_sites('[{"key":"a","api":"/spider/a/"},{"key":"b","api":"/spider/baseset/"}]')
    state = reconcile_sites(sites, {}, {}, [], {})
    rows = merge_for_display(
        state.sites, state.status, state.home, state.order, state.availability, search={},
    )
    a, b = rows
    assert (a["key"], a["home"], a["enabled"], a["availability"]) == ("a", True, True, "unchecked")
    assert (b["key"], b["home"], b["enabled"], b["search"]) == ("b", False, True, False)
