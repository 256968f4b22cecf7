"""Unit tests for MediaPathReconciler."""

import asyncio

import pytest

from gesturevision.core.events import ConfigChange, InternalEvent
from gesturevision.core.media.mtx_api import MtxApiError
from gesturevision.core.media.reconciler import (
    MediaPathReconciler,
    StreamControlError,
    StreamNotConfiguredError,
)


class FakeMtxApi:
    """In-memory stand-in for the media server path table."""

    def __init__(self, paths=None):
        self.paths = dict(paths or {})
        self.calls = []
        self.fail_delete = {}
        self.fail_replace = None
        self.fail_list = None
        self.list_delay = 0.0
        self.list_calls = 0

    async def list_paths(self):
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_list:
            raise self.fail_list
        return [dict(item, name=name) for name, item in self.paths.items()]

    async def replace_path(self, name, payload):
        self.calls.append(("replace", name))
        if self.fail_replace:
            raise self.fail_replace
        self.paths[name] = dict(payload)

    async def delete_path(self, name):
        self.calls.append(("delete", name))
        if name in self.fail_delete:
            raise self.fail_delete[name]
        if name not in self.paths:
            raise MtxApiError("not found", status=404)
        del self.paths[name]


async def _loaded_store(config_store, write_config, document, **overrides):
    document.update(overrides)
    write_config(document)
    await config_store.load()
    return config_store


def _reconciler(store, api, event_bus):
    return MediaPathReconciler(store, api, event_bus, webhook_base_url="http://gv.local:9001/")


# =============================================================================
# Sync
# =============================================================================


class TestSync:
    """Test reconciliation of desired vs. actual paths."""

    @pytest.mark.asyncio
    async def test_deletes_stale_then_upserts_missing(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi({"old_cam": {"source": "rtsp://old"}})
        reconciler = _reconciler(store, api, event_bus)

        report = await reconciler.sync()

        assert api.calls == [("delete", "old_cam"), ("replace", "front_door")]
        assert report.deleted == ["old_cam"]
        assert report.upserted == ["front_door"]
        assert api.paths["front_door"]["source"] == "rtsp://10.0.0.5:554/stream"

    @pytest.mark.asyncio
    async def test_second_sync_is_noop(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        reconciler = _reconciler(store, api, event_bus)

        await reconciler.sync()
        api.calls.clear()
        report = await reconciler.sync()

        assert api.calls == []
        assert report.call_count == 0

    @pytest.mark.asyncio
    async def test_changed_url_is_replaced(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi({"front_door": {"source": "rtsp://elsewhere", "sourceOnDemand": False}})

        await _reconciler(store, api, event_bus).sync()

        assert api.calls == [("replace", "front_door")]

    @pytest.mark.asyncio
    async def test_delete_not_found_counts_as_deleted(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config, rtspSources=[])
        api = FakeMtxApi({"ghost": {}})
        api.fail_delete["ghost"] = MtxApiError("gone", status=404)

        report = await _reconciler(store, api, event_bus).sync()

        assert report.deleted == ["ghost"]
        assert report.failed == {}

    @pytest.mark.asyncio
    async def test_failed_call_does_not_abort_batch(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi({"a": {}, "b": {}})
        api.fail_delete["a"] = MtxApiError("boom", status=500)

        report = await _reconciler(store, api, event_bus).sync()

        assert report.failed == {"a": "boom"}
        assert report.deleted == ["b"]
        assert report.upserted == ["front_door"]

    @pytest.mark.asyncio
    async def test_list_failure_is_reported(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        api.fail_list = MtxApiError("unreachable")

        report = await _reconciler(store, api, event_bus).sync()

        assert report.error == "unreachable"
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_sources_without_url_are_ignored(self, config_store, event_bus):
        await config_store.load()
        reconciler = _reconciler(config_store, FakeMtxApi(), event_bus)

        assert reconciler.desired_paths() == {}


class TestPathPayload:
    """Test the media server path configuration."""

    def test_always_on_source_gets_hooks(self, config_store, event_bus):
        reconciler = _reconciler(config_store, FakeMtxApi(), event_bus)

        payload = reconciler.build_path_payload("front door", {"url": "rtsp://x", "sourceOnDemand": False})

        assert payload["sourceOnDemand"] is False
        assert payload["runOnReady"] == (
            "curl -X POST http://gv.local:9001/api/mtx-hook/ready/front%20door"
        )
        assert payload["runOnNotReady"].endswith("/api/mtx-hook/notReady/front%20door")
        assert "sourceOnDemandStartTimeout" not in payload

    def test_on_demand_source_gets_timeouts(self, config_store, event_bus):
        reconciler = _reconciler(config_store, FakeMtxApi(), event_bus)

        payload = reconciler.build_path_payload("cam", {"url": "rtsp://x", "sourceOnDemand": True})

        assert payload == {
            "source": "rtsp://x",
            "sourceOnDemand": True,
            "sourceOnDemandStartTimeout": "15s",
            "sourceOnDemandCloseAfter": "15s",
        }


# =============================================================================
# Triggers
# =============================================================================


class TestTriggers:
    """Test which config events start a sync."""

    @pytest.mark.asyncio
    async def test_rtsp_change_triggers_sync(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        reconciler = _reconciler(store, api, event_bus)
        reconciler.attach()

        await event_bus.publish(InternalEvent.CONFIG_RELOADED, ConfigChange(config=store.get(), rtsp_changed=True))
        await reconciler.sync_task

        assert api.calls == [("replace", "front_door")]

    @pytest.mark.asyncio
    async def test_non_rtsp_change_is_ignored(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        reconciler = _reconciler(store, api, event_bus)
        reconciler.attach()

        await event_bus.publish(InternalEvent.CONFIG_PATCHED, ConfigChange(config=store.get(), rtsp_changed=False))

        assert reconciler.sync_task is None
        assert api.list_calls == 0

    @pytest.mark.asyncio
    async def test_detach_stops_syncs(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        reconciler = _reconciler(store, api, event_bus)
        reconciler.attach()
        reconciler.detach()

        await event_bus.publish(InternalEvent.CONFIG_RELOADED, ConfigChange(config=store.get(), rtsp_changed=True))

        assert reconciler.sync_task is None
        assert api.list_calls == 0

    @pytest.mark.asyncio
    async def test_queued_requests_share_one_sync(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        reconciler = _reconciler(store, api, event_bus)

        tasks = {reconciler.request_sync() for _ in range(3)}
        assert len(tasks) == 1
        await tasks.pop()

        assert api.list_calls == 1

    @pytest.mark.asyncio
    async def test_requests_during_sync_run_one_follow_up(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        api.list_delay = 0.05
        reconciler = _reconciler(store, api, event_bus)

        task = reconciler.request_sync()
        while api.list_calls == 0:
            await asyncio.sleep(0.005)
        reconciler.request_sync()
        reconciler.request_sync()
        await task

        assert api.list_calls == 2

    @pytest.mark.asyncio
    async def test_patch_does_not_wait_for_media_server(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        api.list_delay = 1.0
        reconciler = _reconciler(store, api, event_bus)
        reconciler.attach()
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await store.patch({"rtspSources": [{"name": "Garage", "url": "rtsp://10.0.0.9/stream"}]})
        elapsed = loop.time() - started

        assert result.success
        assert elapsed < 0.5
        await reconciler.sync_task
        assert api.list_calls == 1
        assert api.calls == [("replace", "garage")]

    @pytest.mark.asyncio
    async def test_close_cancels_running_sync(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        api.list_delay = 5.0
        reconciler = _reconciler(store, api, event_bus)
        reconciler.attach()

        task = reconciler.request_sync()
        await asyncio.sleep(0)
        await reconciler.close()

        assert task.cancelled()
        assert reconciler.sync_task is None
        await event_bus.publish(InternalEvent.CONFIG_RELOADED, ConfigChange(config=store.get(), rtsp_changed=True))
        assert reconciler.sync_task is None


# =============================================================================
# On-demand control
# =============================================================================


class TestOnDemand:
    """Test connect/disconnect of on-demand streams."""

    @pytest.mark.asyncio
    async def test_connect_configures_path(self, config_store, write_config, event_bus, recorder, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()

        await _reconciler(store, api, event_bus).connect_on_demand_stream("front_door")

        assert api.calls == [("replace", "front_door")]
        status = recorder.of(InternalEvent.STREAM_STATUS_CHANGED)[-1]
        assert (status.path_name, status.status) == ("front_door", "unknown")

    @pytest.mark.asyncio
    async def test_connect_unknown_source(self, config_store, write_config, event_bus, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)

        with pytest.raises(StreamNotConfiguredError, match="not found or URL is missing"):
            await _reconciler(store, FakeMtxApi(), event_bus).connect_on_demand_stream("nope")

    @pytest.mark.asyncio
    async def test_connect_failure_publishes_error(self, config_store, write_config, event_bus, recorder, sample_config):
        store = await _loaded_store(config_store, write_config, sample_config)
        api = FakeMtxApi()
        api.fail_replace = MtxApiError("refused", status=500)

        with pytest.raises(StreamControlError):
            await _reconciler(store, api, event_bus).connect_on_demand_stream("front_door")

        status = recorder.of(InternalEvent.STREAM_STATUS_CHANGED)[-1]
        assert status.status == "error"
        assert "refused" in status.message

    @pytest.mark.asyncio
    async def test_disconnect_missing_path_still_reports_inactive(self, config_store, event_bus, recorder):
        api = FakeMtxApi()

        await _reconciler(config_store, api, event_bus).disconnect_on_demand_stream("front_door")

        assert api.calls == [("delete", "front_door")]
        assert recorder.of(InternalEvent.STREAM_STATUS_CHANGED)[-1].status == "inactive"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hook,expected", [("ready", "active"), ("notReady", "inactive"), ("bogus", None)])
    async def test_report_hook(self, config_store, event_bus, recorder, hook, expected):
        reconciler = _reconciler(config_store, FakeMtxApi(), event_bus)

        assert await reconciler.report_hook("front_door", hook) == expected
        published = [s.status for s in recorder.of(InternalEvent.STREAM_STATUS_CHANGED)]
        assert published == ([expected] if expected else [])
