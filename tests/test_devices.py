import threading

import pytest

from stoneridge.service.devices import (
    RequestMeta,
    detect_device_type,
    extract_device_name,
    fingerprint,
)
from stoneridge.service.errors import ResourceNotFoundError
from stoneridge.service.notifications import NotificationKind

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148"
ANDROID_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile Safari/537.36"
IPAD_UA = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)"
MAC_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Safari/605.1.15"


class TestFingerprint:
    def test_identical_metadata_gives_identical_fingerprint(self, browser_meta):
        copy = RequestMeta(**browser_meta.__dict__)
        assert fingerprint(browser_meta) == fingerprint(copy)
        assert len(fingerprint(browser_meta)) == 64

    def test_ip_change_changes_fingerprint(self, browser_meta):
        moved = RequestMeta(
            user_agent=browser_meta.user_agent,
            accept_language=browser_meta.accept_language,
            accept_encoding=browser_meta.accept_encoding,
            remote_addr="192.0.2.99",
        )
        assert fingerprint(moved) != fingerprint(browser_meta)

    def test_client_ip_prefers_first_forwarded_entry(self):
        meta = RequestMeta.from_headers(
            {"X-Forwarded-For": " 198.51.100.1 , 10.0.0.1", "User-Agent": "ua"},
            remote_addr="10.0.0.2",
        )
        assert meta.client_ip == "198.51.100.1"
        assert meta.user_agent == "ua"
        assert RequestMeta(remote_addr="10.0.0.2").client_ip == "10.0.0.2"

    def test_missing_headers_hash_as_empty(self):
        assert fingerprint(RequestMeta()) == fingerprint(RequestMeta(user_agent=""))


class TestDeviceNaming:
    @pytest.mark.parametrize(
        "ua,name,kind",
        [
            (None, "Unknown Device", "unknown"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64)", "Windows PC", "desktop"),
            (MAC_UA, "Mac", "desktop"),
            (IPHONE_UA, "iPhone", "mobile"),
            (ANDROID_UA, "Android Device", "mobile"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "Linux PC", "desktop"),
            (IPAD_UA, "Mac", "tablet"),
            ("curl/8.4.0", "Unknown Device", "desktop"),
        ],
    )
    def test_name_and_type(self, ua, name, kind):
        assert extract_device_name(ua) == name
        assert detect_device_type(ua) == kind


class TestTrustRegistry:
    def test_trust_then_check_is_trusted(self, devices, make_account, browser_meta, notifier):
        account = make_account("dave")
        fp = fingerprint(browser_meta)
        device = devices.trust(account, fp, browser_meta)

        assert devices.is_trusted(account, fp)
        assert device.device_name == "Windows PC"
        assert device.ip_address == "203.0.113.7"
        alerts = notifier.of_kind(NotificationKind.NEW_DEVICE)
        assert alerts and alerts[0].payload["device_name"] == "Windows PC"

    def test_check_touches_last_used(self, devices, store, make_account, browser_meta, clock):
        account = make_account("dave")
        fp = fingerprint(browser_meta)
        device = devices.trust(account, fp, browser_meta)
        clock.advance(hours=2)

        devices.is_trusted(account, fp)
        assert store.get_device(device.id).last_used_at == clock.now()

    def test_expired_device_is_deactivated_lazily(
        self, devices, store, make_account, browser_meta, clock
    ):
        account = make_account("dave")
        fp = fingerprint(browser_meta)
        device = devices.trust(account, fp, browser_meta)
        clock.advance(days=30)

        assert not devices.is_trusted(account, fp)
        assert not store.get_device(device.id).active
        assert not devices.is_trusted(account, fp)

    def test_unknown_fingerprint_untrusted(self, devices, make_account):
        assert not devices.is_trusted(make_account("dave"), "0" * 64)

    def test_eviction_drops_least_recently_used(self, devices, store, make_account, clock):
        account = make_account("dave")
        metas = [RequestMeta(user_agent=f"agent-{i}", remote_addr="192.0.2.1") for i in range(4)]
        created = []
        for meta in metas[:3]:
            created.append(devices.trust(account, fingerprint(meta), meta))
            clock.advance(minutes=1)
        # Touch the oldest so the second becomes least recently used
        devices.is_trusted(account, fingerprint(metas[0]))

        devices.trust(account, fingerprint(metas[3]), metas[3])

        active = [d for d in store.list_devices(account.id) if d.active]
        assert len(active) == 3
        assert not store.get_device(created[1].id).active
        assert store.get_device(created[0].id).active

    def test_eviction_ties_fall_back_to_insertion_order(self, devices, store, make_account):
        account = make_account("dave")
        metas = [RequestMeta(user_agent=f"agent-{i}") for i in range(4)]
        created = [devices.trust(account, fingerprint(m), m) for m in metas]

        assert not store.get_device(created[0].id).active
        assert all(store.get_device(d.id).active for d in created[1:])

    def test_list_revoke_and_revoke_all(self, devices, make_account):
        account = make_account("dave")
        metas = [RequestMeta(user_agent=f"agent-{i}") for i in range(2)]
        first, second = [devices.trust(account, fingerprint(m), m) for m in metas]

        devices.revoke(account.id, first.id)
        assert [d.id for d in devices.list_trusted(account.id)] == [second.id]
        with pytest.raises(ResourceNotFoundError):
            devices.revoke(account.id, first.id)

        assert devices.revoke_all(account.id) == 1
        assert devices.list_trusted(account.id) == []

    def test_revoke_other_accounts_device_not_found(self, devices, make_account, browser_meta):
        owner = make_account("dave")
        stranger = make_account("eve")
        device = devices.trust(owner, fingerprint(browser_meta), browser_meta)
        with pytest.raises(ResourceNotFoundError):
            devices.revoke(stranger.id, device.id)

    def test_device_evicted_during_check_stays_inactive(
        self, devices, store, make_account, monkeypatch
    ):
        account = make_account("dave")
        metas = [RequestMeta(user_agent=f"agent-{i}") for i in range(3)]
        created = [devices.trust(account, fingerprint(m), m) for m in metas]
        newcomer = RequestMeta(user_agent="agent-9")
        lookup = store.find_active_device

        def lookup_then_evict(account_id, fp):
            found = lookup(account_id, fp)
            # A concurrent "remember me" login pushes the looked-up device out
            devices.trust(account, fingerprint(newcomer), newcomer)
            return found

        monkeypatch.setattr(store, "find_active_device", lookup_then_evict)

        assert not devices.is_trusted(account, fingerprint(metas[0]))
        assert not store.get_device(created[0].id).active
        assert len([d for d in store.list_devices(account.id) if d.active]) == 3

    def test_concurrent_trusts_respect_cap(self, devices, store, make_account):
        account = make_account("dave")
        metas = [RequestMeta(user_agent=f"agent-{i}") for i in range(12)]
        barrier = threading.Barrier(len(metas))

        def remember(meta):
            barrier.wait()
            devices.trust(account, fingerprint(meta), meta)

        threads = [threading.Thread(target=remember, args=(m,)) for m in metas]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len([d for d in store.list_devices(account.id) if d.active]) == 3
