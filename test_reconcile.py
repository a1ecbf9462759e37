from sites import Site
from sites.reconcile import normalize_sites, reconcile_order, reconcile_sites, reconcile_state
from sites.state import USER_COLUMNS, SiteState, state_changed


def site(key, spider=None):
    return Site(key=key, name=key.upper(), api=f"http://cat.local/spider/{spider or key}/1")


SITES = [site("a"), site("b"), site("c")]


def test_normalize_trims_and_drops_invalid_entries():
    out = normalize_sites([
        Site(" a ", "A", " /spider/a/ "),
        Site("", "blank key", "/spider/x/"),
        Site("b", "blank api", "  "),
        Site("a", "dup", "/spider/a2/"),
        Site("c", "C", "/spider/c/", 3),
    ])
    assert [(s.key, s.name, s.api, s.type) for s in out] == [
        ("a", "A", "/spider/a/", None),
        ("c", "C", "/spider/c/", 3),
    ]


def test_reconcile_twice_does_not_drift():
    first = reconcile_sites(SITES, {"b": False, "z": True}, {"c": False}, ["c", "z"], {"a": "valid"})
    second = reconcile_sites(SITES, first.status, first.home, first.order, first.availability)
    assert second == first


def test_overlay_keys_match_site_keys():
    state = reconcile_sites(SITES, {"x": True}, {"a": True}, ["b", "x"], {"y": "valid"})
    keys = {"a", "b", "c"}
    assert set(state.status) == keys
    assert set(state.home) == keys
    assert set(state.availability) == keys
    assert set(state.order) == keys
    assert len(state.order) == 3


def test_user_customizations_survive_refresh():
    state = reconcile_sites(list(reversed(SITES)), {"a": False}, {"b": False}, [], {})
    assert state.status["a"] is False
    assert state.home["b"] is False
    assert state.status["b"] is True
    assert state.home["a"] is True


def test_removed_sites_are_pruned():
    state = reconcile_sites(
        SITES,
        {"z": False}, {"z": False}, ["z", "a"], {"z": "invalid"},
    )
    assert "z" not in state.status
    assert "z" not in state.home
    assert "z" not in state.availability
    assert "z" not in state.order


def test_new_key_is_inserted_after_its_predecessor():
    assert reconcile_order(["a", "c"], ["a", "b", "c"]) == ["a", "b", "c"]


def test_manual_order_is_kept_and_new_keys_follow_neighbours():
    assert reconcile_order(["c", "a"], ["a", "b", "c"]) == ["c", "a", "b"]
    assert reconcile_order(["b"], ["a", "b"]) == ["a", "b"]
    assert reconcile_order([], ["a", "b"]) == ["a", "b"]
    assert reconcile_order([" a", "a", "b"], ["b", "a"]) == ["a", "b"]


def test_config_center_defaults_to_hidden_on_home():
    state = reconcile_sites([site("a"), site("cfg", spider="baseset")], {}, {}, [], {})
    assert state.home == {"a": True, "cfg": False}
    assert state.status == {"a": True, "cfg": True}


def test_unknown_availability_becomes_unchecked():
    state = reconcile_sites(SITES, {}, {}, [], {"a": "bogus", "b": "search_error", "c": ""})
    assert state.availability == {"a": "unchecked", "b": "search_error", "c": "unchecked"}


def test_reconciled_state_dumps_identically():
    row = {col: "" for col in USER_COLUMNS.values()}
    state = reconcile_state(SITES, SiteState.load(row, USER_COLUMNS))
    dumped = state.dump(USER_COLUMNS)
    assert state_changed(row, dumped)

    again = reconcile_state(SITES, SiteState.load(dumped, USER_COLUMNS))
    assert not state_changed(dumped, again.dump(USER_COLUMNS))


def test_corrupt_stored_json_degrades_to_empty():
    row = {col: "{not json" for col in USER_COLUMNS.values()}
    state = SiteState.load(row, USER_COLUMNS)
    assert state == SiteState()
