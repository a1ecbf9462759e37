import threading

import pytest

import auth
from sites import dump_json, parse_bool_map
from sites.resolve import update_user_sites
from store import DEFAULT_SETTINGS, UserNotFound


def add_user(store, username="alice", role="user"):
    with store.connection() as conn:
        cur = conn.execute(
            "INSERT INTO users(username, password, role) VALUES (?, ?, ?)", (username, "x", role),
        )
    return cur.lastrowid


def test_defaults_are_seeded(store):
    assert store.get_setting("site_name") == DEFAULT_SETTINGS["site_name"]
    assert store.get_setting("video_source_sites") == "[]"
    assert store.get_setting("missing") == ""
    assert store.get_setting("  ") == ""


def test_version_moves_only_on_real_change(store):
    start = store.settings_version
    assert store.set_settings({"site_name": "家庭影院"}) is True
    assert store.settings_version == start + 1
    assert store.set_settings({"site_name": "家庭影院"}) is False
    assert store.settings_version == start + 1
    assert store.get_setting("site_name") == "家庭影院"


def test_update_settings_returns_changed_keys(store):
    def mutate(current):
        assert current == {"site_name": "TV Server", "douban_data_proxy": "direct"}
        return {"site_name": "TV Server", "douban_data_proxy": "cdn"}

    changed = store.update_settings(["site_name", "douban_data_proxy"], mutate)
    assert changed == {"douban_data_proxy": "cdn"}
    assert store.get_setting("douban_data_proxy") == "cdn"


def test_failed_update_leaves_settings_untouched(store):
    version = store.settings_version

    def mutate(current):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update_settings(["site_name"], mutate)
    assert store.get_setting("site_name") == "TV Server"
    assert store.settings_version == version


def test_concurrent_updates_are_not_lost(store):
    store.set_setting("counter", "0")

    def bump(current):
        return {"counter": str(int(current["counter"]) + 1)}

    threads = [
        threading.Thread(target=store.update_settings, args=(["counter"], bump))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get_setting("counter") == "8"


def test_locked_user_saves_and_rolls_back(store):
    user_id = add_user(store)
    with store.locked_user(user_id) as locked:
        locked.save({"cat_proxy": "http://proxy.local"})

    with pytest.raises(ValueError):
        with store.locked_user(user_id) as locked:
            locked.save({"cat_proxy": "http://other.local"})
            raise ValueError("abort")

    assert store.get_user_row(user_id)["cat_proxy"] == "http://proxy.local"


def test_locked_user_rejects_unknown_columns(store):
    user_id = add_user(store)
    with pytest.raises(KeyError):
        with store.locked_user(user_id) as locked:
            locked.save({"nope": "1"})


def test_missing_user_raises(store):
    with pytest.raises(UserNotFound):
        store.get_user_row(999)
    with pytest.raises(UserNotFound):
        with store.locked_user(999):
            pass


def test_concurrent_user_site_toggles_are_not_lost(store):
    keys = [f"s{i}" for i in range(8)]
    store.set_settings({"video_source_sites": dump_json([
        {"key": k, "name": k.upper(), "api": f"http://cat.local/spider/{k}/1"} for k in keys
    ])})
    user_id = add_user(store, "bob", role="shared")
    user = auth.User(user_id, "bob", "shared", "active")
    start = threading.Barrier(len(keys))

    def disable(key):
        def mutate(resolved):
            resolved.state.status[key] = False

        start.wait()
        update_user_sites(store, user, mutate)

    threads = [threading.Thread(target=disable, args=(k,)) for k in keys]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    status = parse_bool_map(store.get_user_row(user_id)["cat_site_status"])
    assert status == {k: False for k in keys}


def test_concurrent_locked_user_writes_are_serialised(store):
    user_id = add_user(store)
    start = threading.Barrier(6)

    def bump():
        start.wait()
        with store.locked_user(user_id) as locked:
            locked.save({"search_thread_count": locked.values["search_thread_count"] + 1})

    threads = [threading.Thread(target=bump) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get_user_row(user_id)["search_thread_count"] == 11
