"""Tests for the fail-fast admission gate."""

from __future__ import annotations

import pytest

from claude_bridge.admission import AdmissionController


class TestAdmissionController:
    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            AdmissionController(0)

    def test_acquire_until_exhausted(self):
        controller = AdmissionController(2)
        first = controller.acquire()
        second = controller.acquire()
        assert first is not None and second is not None
        assert first.slot_id != second.slot_id
        assert controller.in_flight == 2
        assert controller.available == 0
        assert controller.acquire() is None
        assert controller.in_flight == 2

    def test_release_is_idempotent(self):
        controller = AdmissionController(1)
        slot = controller.acquire()
        slot.release()
        slot.release()
        assert slot.is_released
        assert controller.in_flight == 0
        # A double release must not free capacity held by someone else.
        other = controller.acquire()
        slot.release()
        assert controller.in_flight == 1
        assert other is not None and not other.is_released

    def test_context_manager_releases(self):
        controller = AdmissionController(1)
        with controller.acquire() as slot:
            assert controller.in_flight == 1
        assert slot.is_released
        assert controller.in_flight == 0

    def test_release_on_exception(self):
        controller = AdmissionController(1)
        with pytest.raises(RuntimeError):
            with controller.acquire():
                raise RuntimeError("backend failed")
        assert controller.available == 1

    @pytest.mark.asyncio
    async def test_async_release(self):
        controller = AdmissionController(1)
        slot = controller.acquire()
        await slot.arelease()
        await slot.arelease()
        assert controller.in_flight == 0
