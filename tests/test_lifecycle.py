"""
Tests for the model lifecycle manager: coalesced loads, device fallback,
progress reporting and teardown.
"""

import asyncio

import pytest

from docembed.embeddings.lifecycle import ModelLifecycleManager
from docembed.embeddings.types import Device, ModelPhase, ModelSelector
from docembed.errors import ModelLoadFailure, NotReady

from conftest import MODEL, FakeLoader


class TestInit:
    def test_starts_uninitialized(self, manager, loader):
        status = manager.status()

        assert status.state.phase is ModelPhase.UNINITIALIZED
        assert status.selector is None
        assert loader.calls == []

    def test_init_reaches_ready(self, manager, loader):
        status = asyncio.run(manager.init())

        assert status.ready
        assert status.selector == ModelSelector(MODEL, Device.WASM)
        assert status.dimensions == 384
        assert loader.calls == [(MODEL, Device.WASM)]

    def test_ready_selector_returns_immediately(self, manager, loader):
        async def scenario():
            await manager.init()
            await manager.init()
            await manager.init(ModelSelector(MODEL, None))

        asyncio.run(scenario())

        assert manager.load_count == 1
        assert len(loader.calls) == 1

    def test_concurrent_init_loads_once(self, cache):
        loader = FakeLoader(delay_s=0.05)
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)

        async def scenario():
            return await asyncio.gather(*(manager.init() for _ in range(10)))

        statuses = asyncio.run(scenario())

        assert all(s.ready for s in statuses)
        assert manager.load_count == 1
        assert len(loader.calls) == 1

    def test_attached_callers_see_progress(self, cache):
        loader = FakeLoader(delay_s=0.05)
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)
        first, second = [], []

        async def scenario():
            await asyncio.gather(manager.init(on_progress=first.append), manager.init(on_progress=second.append))

        asyncio.run(scenario())

        assert first[0].progress == 0.0
        assert first[-1].phase == "ready"
        assert second[-1].phase == "ready"

    def test_progress_is_monotonic_and_bounded(self, manager):
        events = []
        asyncio.run(manager.init(on_progress=events.append))

        values = [e.progress for e in events]
        assert values == sorted(values)
        assert all(0.0 <= v <= 1.0 for v in values)
        assert values[-1] == 1.0
        # the loader's out-of-order 0.4 report is dropped
        assert 0.4 not in values

    def test_progress_callback_errors_do_not_break_load(self, manager):
        def broken(event):
            raise ValueError("ui went away")

        status = asyncio.run(manager.init(on_progress=broken))

        assert status.ready


class TestDeviceFallback:
    def test_auto_device_prefers_webgpu(self, cache):
        loader = FakeLoader()
        manager = ModelLifecycleManager(ModelSelector(MODEL, None), loader=loader, cache=cache)

        status = asyncio.run(manager.init())

        assert loader.calls == [(MODEL, Device.WEBGPU)]
        assert status.selector.device is Device.WEBGPU

    def test_falls_back_to_wasm_once(self, cache):
        loader = FakeLoader(failing_devices={Device.WEBGPU})
        manager = ModelLifecycleManager(ModelSelector(MODEL, None), loader=loader, cache=cache)

        status = asyncio.run(manager.init())

        assert loader.calls == [(MODEL, Device.WEBGPU), (MODEL, Device.WASM)]
        assert status.ready
        assert status.selector.device is Device.WASM

    def test_reports_final_failure_reason(self, cache):
        loader = FakeLoader(failing_devices={Device.WEBGPU, Device.WASM})
        manager = ModelLifecycleManager(ModelSelector(MODEL, None), loader=loader, cache=cache)

        with pytest.raises(ModelLoadFailure, match="wasm unavailable"):
            asyncio.run(manager.init())

        state = manager.status().state
        assert state.phase is ModelPhase.FAILED
        assert "wasm unavailable" in state.reason
        assert len(loader.calls) == 2

    def test_explicit_device_never_falls_back(self, cache):
        loader = FakeLoader(failing_devices={Device.WEBGPU})
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WEBGPU), loader=loader, cache=cache)

        with pytest.raises(ModelLoadFailure):
            asyncio.run(manager.init())

        assert loader.calls == [(MODEL, Device.WEBGPU)]

    def test_failed_state_retries_on_next_init(self, cache):
        loader = FakeLoader(fail_times=1)
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)

        async def scenario():
            with pytest.raises(ModelLoadFailure):
                await manager.init()
            assert manager.status().state.phase is ModelPhase.FAILED
            return await manager.init()

        status = asyncio.run(scenario())

        assert status.ready
        assert manager.load_count == 2


class TestReadiness:
    def test_backend_before_init_is_not_ready(self, manager):
        with pytest.raises(NotReady):
            manager.backend()

    def test_backend_after_init(self, manager, loader):
        asyncio.run(manager.init())

        assert manager.backend() is loader.backend


class TestClearCaches:
    def test_clear_returns_to_uninitialized(self, manager, loader, cache):
        async def scenario():
            await manager.init()
            cache.put(("doc", MODEL), [0.1, 0.2])
            await manager.clear_caches()

        asyncio.run(scenario())

        assert manager.status().state.phase is ModelPhase.UNINITIALIZED
        assert manager.status().selector is None
        assert loader.backend.closed
        assert len(cache) == 0
        with pytest.raises(NotReady):
            manager.backend()

    def test_clear_is_safe_when_uninitialized(self, manager):
        asyncio.run(manager.clear_caches())

        assert manager.status().state.phase is ModelPhase.UNINITIALIZED

    def test_init_after_clear_loads_again(self, manager, loader):
        async def scenario():
            await manager.init()
            await manager.clear_caches()
            await manager.init()

        asyncio.run(scenario())

        assert manager.load_count == 2
        assert manager.ready

    def test_clear_during_load_discards_result(self, cache):
        loader = FakeLoader(delay_s=0.05)
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)

        async def scenario():
            pending = asyncio.ensure_future(manager.init())
            await asyncio.sleep(0.01)
            await manager.clear_caches()
            with pytest.raises(ModelLoadFailure):
                await pending

        asyncio.run(scenario())

        assert not manager.ready
        assert loader.backend.closed


class TestModelSwitch:
    def test_failed_switch_releases_previous_model(self, cache):
        loader = FakeLoader(failing_devices={Device.WEBGPU})
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)

        async def scenario():
            await manager.init()
            with pytest.raises(ModelLoadFailure):
                await manager.init(ModelSelector(MODEL, Device.WEBGPU))

        asyncio.run(scenario())

        status = manager.status()
        assert status.state.phase is ModelPhase.FAILED
        assert status.dimensions is None
        assert loader.backends[0].closed
        with pytest.raises(NotReady):
            manager.backend()

    def test_recovers_after_failed_switch(self, cache):
        loader = FakeLoader(failing_devices={Device.WEBGPU})
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)

        async def scenario():
            await manager.init()
            with pytest.raises(ModelLoadFailure):
                await manager.init(ModelSelector(MODEL, Device.WEBGPU))
            return await manager.init()

        status = asyncio.run(scenario())

        assert status.ready
        assert manager.backend() is loader.backends[-1]
        assert not loader.backends[-1].closed

    def test_successful_switch_closes_previous_model(self, cache):
        loader = FakeLoader()
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)

        async def scenario():
            await manager.init()
            await manager.init(ModelSelector(MODEL, Device.WEBGPU))

        asyncio.run(scenario())

        first, second = loader.backends
        assert first.closed
        assert manager.backend() is second
        assert manager.status().selector == ModelSelector(MODEL, Device.WEBGPU)

    def test_state_never_reports_a_released_model(self, cache):
        loader = FakeLoader(delay_s=0.05)
        manager = ModelLifecycleManager(ModelSelector(MODEL, Device.WASM), loader=loader, cache=cache)
        seen = []

        async def scenario():
            await manager.init()
            switch = asyncio.ensure_future(manager.init(ModelSelector(MODEL, Device.WEBGPU)))
            await asyncio.sleep(0.01)
            seen.append(manager.status())
            await switch

        asyncio.run(scenario())

        during = seen[0]
        assert during.state.phase is ModelPhase.LOADING
        assert during.dimensions is None
        assert loader.backends[0].closed


class TestModelFiles:
    def test_download_skips_unused_weight_formats(self, monkeypatch):
        import huggingface_hub

        from docembed.embeddings.backend import fetch_model_files

        calls = []

        def fake_snapshot_download(**kwargs):
            calls.append(kwargs)
            return "/models/e5"

        monkeypatch.setattr(huggingface_hub, "snapshot_download", fake_snapshot_download)
        reports = []

        path = fetch_model_files(MODEL, reports.append)

        assert path == "/models/e5"
        assert calls[0]["repo_id"] == MODEL
        assert {"onnx/*", "openvino/*", "*.h5", "*.msgpack"} <= set(calls[0]["ignore_patterns"])
        assert reports[-1] == 0.8

    def test_missing_accelerator_fails_before_download(self, monkeypatch):
        import huggingface_hub
        import torch

        from docembed.embeddings.backend import load_sentence_transformer

        downloads = []
        monkeypatch.setattr(huggingface_hub, "snapshot_download", lambda **kw: downloads.append(kw))
        monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
        monkeypatch.setattr(torch.backends.mps, "is_available", lambda: False)

        with pytest.raises(RuntimeError, match="accelerator"):
            load_sentence_transformer(MODEL, Device.WEBGPU, lambda fraction: None)

        assert downloads == []
