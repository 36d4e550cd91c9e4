"""
Tests for relay/arbiter.py destination claims.
"""

import threading

from relay.arbiter import DestinationArbiter, mask_destination, normalize_destination

DEST = "rtmp://live.example.com/app/streamkey123"


class TestClaims:
    """Test cases for claim, reclaim and release."""

    def test_claim_free_destination(self):
        arbiter = DestinationArbiter()

        result = arbiter.claim(DEST, "0")

        assert result.granted is True
        assert result.evicted_slot_id is None
        assert result.token.slot_id == "0"
        assert arbiter.holder(DEST) == "0"

    def test_claim_empty_destination_refused(self):
        arbiter = DestinationArbiter()

        assert arbiter.claim("   ", "0").granted is False
        assert arbiter.claims() == {}

    def test_same_slot_reclaim_is_noop(self):
        """Test a slot claiming its own destination keeps the original token."""
        evictions = []
        arbiter = DestinationArbiter(on_evict=lambda slot, dest: evictions.append(slot))

        first = arbiter.claim(DEST, "0")
        second = arbiter.claim(DEST + "/", "0")

        assert second.granted is True
        assert second.token == first.token
        assert second.evicted_slot_id is None
        assert evictions == []

    def test_other_slot_evicts_holder(self):
        """Test a conflicting claim is granted and the old holder is notified."""
        evictions = []
        arbiter = DestinationArbiter(on_evict=lambda slot, dest: evictions.append((slot, dest)))
        arbiter.claim(DEST, "0")

        result = arbiter.claim(DEST, "1")

        assert result.granted is True
        assert result.evicted_slot_id == "0"
        assert arbiter.holder(DEST) == "1"
        assert evictions == [("0", normalize_destination(DEST))]

    def test_evict_callback_may_use_arbiter(self):
        """Test the eviction callback runs without the arbiter lock held."""
        arbiter = DestinationArbiter()
        seen = []
        arbiter.on_evict = lambda slot, dest: seen.append(arbiter.holder(dest))
        arbiter.claim(DEST, "0")

        arbiter.claim(DEST, "1")

        assert seen == ["1"]

    def test_reclaim_never_evicts(self):
        arbiter = DestinationArbiter()
        arbiter.claim(DEST, "1")

        assert arbiter.reclaim(DEST, "0") is False
        assert arbiter.holder(DEST) == "1"
        assert arbiter.reclaim(DEST, "1") is True

    def test_reclaim_free_destination(self):
        arbiter = DestinationArbiter()

        assert arbiter.reclaim(DEST, "2") is True
        assert arbiter.holder(DEST) == "2"

    def test_release_only_by_holder(self):
        arbiter = DestinationArbiter()
        arbiter.claim(DEST, "0")

        assert arbiter.release(DEST, "1") is False
        assert arbiter.holder(DEST) == "0"
        assert arbiter.release(DEST, "0") is True
        assert arbiter.holder(DEST) is None
        assert arbiter.release(DEST, "0") is False

    def test_concurrent_claims_single_holder(self):
        """Test many slots racing for one destination leave exactly one holder."""
        evictions = []
        lock = threading.Lock()

        def record(slot, dest):
            with lock:
                evictions.append(slot)

        arbiter = DestinationArbiter(on_evict=record)
        barrier = threading.Barrier(8)

        def worker(slot_id):
            barrier.wait()
            arbiter.claim(DEST, slot_id)

        threads = [threading.Thread(target=worker, args=(str(i),)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        claims = arbiter.claims()
        holder = claims[normalize_destination(DEST)]
        assert len(claims) == 1
        assert len(evictions) == 7
        assert set(evictions) == {str(i) for i in range(8)} - {holder}


class TestMasking:
    """Test cases for stream key masking."""

    def test_mask_stream_key(self):
        assert mask_destination(DEST) == "rtmp://live.example.com/app/str***"

    def test_short_key(self):
        assert mask_destination("rtmp://host/app/abc") == "rtmp://host/app/***"

    def test_bare_host_untouched(self):
        assert mask_destination("rtmp://host") == "rtmp://host"

    def test_empty(self):
        assert mask_destination("") == ""
