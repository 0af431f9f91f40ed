"""
Availability poller tests.

The poller's sleep is replaced by a virtual clock, so the full schedule
runs instantly.

✔ start() checks once; an available provider starts no loop
✔ one status event per tick
✔ early warning exactly once at the threshold
✔ backoff at the threshold multiplies the interval; attempts are not reset
✔ exhaustion stops the loop with one event and no further probes
✔ recovery resets the state, emits a transition and refreshes models
✔ recheck() resumes after exhaustion
✔ the loop follows a change of active provider; a provider picked up again starts fresh
✔ overlapping probes are skipped
✔ a failing listener does not stop polling
✔ default schedule: warning at 30s, backoff at 100s, exhausted at 700s
"""

import asyncio

import pytest

from conftest import FakeProvider
from planchat.core.events import (
    AvailabilityChangedEvent,
    BackoffEvent,
    EarlyWarningEvent,
    ExhaustedEvent,
    ProviderStatusEvent,
)
from planchat.core.poller import AvailabilityPoller, PollerPhase, PollingPolicy
from planchat.providers.registry import ProviderRegistry


class VirtualClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class Recorder:
    def __init__(self, clock=None):
        self.clock = clock
        self.events = []
        self.times = []

    def __call__(self, event):
        self.events.append(event)
        self.times.append(self.clock.now if self.clock else None)

    def of(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def when(self, event_type):
        return [t for t, e in zip(self.times, self.events) if isinstance(e, event_type)]


def setup(*providers, policy=None, on_models_refreshed=None):
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    clock = VirtualClock()
    poller = AvailabilityPoller(
        registry,
        policy=policy or PollingPolicy(),
        on_models_refreshed=on_models_refreshed,
        sleep=clock.sleep,
    )
    recorder = Recorder(clock)
    poller.add_listener(recorder)
    return registry, poller, clock, recorder


# ─────────────────────────────────────────────────────────────
# Start
# ─────────────────────────────────────────────────────────────


class TestStart:
    @pytest.mark.asyncio
    async def test_available_provider_starts_no_loop(self):
        refreshed = []
        provider = FakeProvider("ollama", availability=[True])
        _, poller, clock, recorder = setup(
            provider, on_models_refreshed=lambda pid, models: refreshed.append(pid)
        )

        state = await poller.start()
        await poller.wait_stopped()

        assert state.available
        assert state.phase is PollerPhase.AVAILABLE
        assert provider.probe_count == 1
        assert clock.sleeps == []
        assert not poller.running
        assert recorder.of(ProviderStatusEvent) == [ProviderStatusEvent("ollama", True, 0)]
        assert recorder.of(AvailabilityChangedEvent) == [AvailabilityChangedEvent("ollama", True, 0)]
        assert refreshed == ["ollama"]

    @pytest.mark.asyncio
    async def test_unavailable_provider_starts_loop(self):
        provider = FakeProvider("ollama", availability=[False])
        _, poller, _, _ = setup(provider, policy=PollingPolicy(max_attempts=3))

        state = await poller.start()

        assert not state.available
        assert state.attempt_count == 0
        assert state.phase is PollerPhase.UNAVAILABLE_WAITING
        await poller.wait_stopped()
        assert poller.state_for("ollama").phase is PollerPhase.EXHAUSTED

    @pytest.mark.asyncio
    async def test_no_active_provider(self):
        poller = AvailabilityPoller(ProviderRegistry())
        assert await poller.start() is None
        assert not poller.running

    @pytest.mark.asyncio
    async def test_state_for_returns_a_copy(self):
        _, poller, _, _ = setup(FakeProvider("ollama", availability=[True]))
        await poller.start()
        snapshot = poller.state_for("ollama")
        snapshot.attempt_count = 99
        assert poller.state_for("ollama").attempt_count == 0
        assert poller.state_for("unknown").phase is PollerPhase.INIT


# ─────────────────────────────────────────────────────────────
# Escalation
# ─────────────────────────────────────────────────────────────


class TestEscalation:
    @pytest.mark.asyncio
    async def test_one_status_event_per_tick(self):
        _, poller, _, recorder = setup(
            FakeProvider("ollama", availability=[False]), policy=PollingPolicy(max_attempts=5)
        )
        await poller.start()
        await poller.wait_stopped()
        counts = [e.attempt_count for e in recorder.of(ProviderStatusEvent)]
        assert counts == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_early_warning_once_at_threshold(self):
        _, poller, _, recorder = setup(
            FakeProvider("ollama", availability=[False]),
            policy=PollingPolicy(early_warning_threshold=3, max_attempts=8),
        )
        await poller.start()
        await poller.wait_stopped()
        warnings = recorder.of(EarlyWarningEvent)
        assert len(warnings) == 1
        assert warnings[0].attempt_count == 3
        assert warnings[0].actions == ("configure", "later")
        assert "Ollama" in warnings[0].message

    @pytest.mark.asyncio
    async def test_backoff_multiplies_interval(self):
        _, poller, clock, recorder = setup(
            FakeProvider("ollama", availability=[False]),
            policy=PollingPolicy(
                base_interval=10, backoff_threshold=10, backoff_factor=3, max_attempts=12
            ),
        )
        await poller.start()
        await poller.wait_stopped()

        assert clock.sleeps == [10.0] * 10 + [30.0] * 2
        backoffs = recorder.of(BackoffEvent)
        assert backoffs == [BackoffEvent("ollama", 10, interval=30.0)]
        state = poller.state_for("ollama")
        assert state.backoff_multiplier == 3
        assert state.attempt_count == 12

    @pytest.mark.asyncio
    async def test_exhaustion_stops_probing(self):
        provider = FakeProvider("ollama", availability=[False])
        _, poller, clock, recorder = setup(provider, policy=PollingPolicy(max_attempts=30))
        await poller.start()
        await poller.wait_stopped()

        exhausted = recorder.of(ExhaustedEvent)
        assert len(exhausted) == 1
        assert exhausted[0].attempt_count == 30
        assert "Ollama" in exhausted[0].message
        # One initial check plus thirty scheduled probes, never a 31st.
        assert provider.probe_count == 31
        assert len(clock.sleeps) == 30
        assert poller.state_for("ollama").phase is PollerPhase.EXHAUSTED
        assert not poller.running

    @pytest.mark.asyncio
    async def test_default_timeline(self):
        _, poller, _, recorder = setup(FakeProvider("ollama", availability=[False]))
        await poller.start()
        await poller.wait_stopped()
        assert recorder.when(EarlyWarningEvent) == [30.0]
        assert recorder.when(BackoffEvent) == [100.0]
        assert recorder.when(ExhaustedEvent) == [700.0]
        assert len(recorder.of(ProviderStatusEvent)) == 31


# ─────────────────────────────────────────────────────────────
# Recovery
# ─────────────────────────────────────────────────────────────


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recovery_resets_state(self):
        refreshed = []
        provider = FakeProvider("ollama", availability=[False] * 12 + [True])
        _, poller, clock, recorder = setup(
            provider,
            policy=PollingPolicy(early_warning_threshold=3, backoff_threshold=10),
            on_models_refreshed=lambda pid, models: refreshed.append((pid, [m.name for m in models])),
        )
        await poller.start()
        await poller.wait_stopped()

        state = poller.state_for("ollama")
        assert state.available
        assert state.attempt_count == 0
        assert state.backoff_multiplier == 1
        assert state.warned is False
        assert state.phase is PollerPhase.AVAILABLE
        assert recorder.of(AvailabilityChangedEvent) == [AvailabilityChangedEvent("ollama", True, 0)]
        assert refreshed == [("ollama", ["fake-model"])]
        assert not poller.running
        # Initial check + 11 failed ticks + the successful one.
        assert provider.probe_count == 13

    @pytest.mark.asyncio
    async def test_no_refresh_without_model_listing(self):
        refreshed = []
        provider = FakeProvider(
            "gemini-cli", availability=[False, True], supports_model_listing=False
        )
        _, poller, _, _ = setup(
            provider, on_models_refreshed=lambda pid, models: refreshed.append(pid)
        )
        await poller.start()
        await poller.wait_stopped()
        assert poller.state_for("gemini-cli").available
        assert refreshed == []

    @pytest.mark.asyncio
    async def test_keep_polling_when_available(self):
        # down x4, up, down x4, up, then healthy
        script = [False] * 4 + [True] + [False] * 4 + [True]
        provider = FakeProvider("ollama", availability=script)
        policy = PollingPolicy(
            early_warning_threshold=3, keep_polling_when_available=True, healthy_interval=60
        )
        registry, poller, clock, recorder = setup(provider, policy=policy)
        recovered = asyncio.Event()

        def on_event(event):
            if isinstance(event, AvailabilityChangedEvent) and event.available:
                if len(recorder.of(AvailabilityChangedEvent)) >= 3:
                    recovered.set()

        poller.add_listener(on_event)
        await poller.start()
        await asyncio.wait_for(recovered.wait(), 1.0)
        await poller.stop()

        changes = recorder.of(AvailabilityChangedEvent)
        assert [c.available for c in changes[:3]] == [True, False, True]
        # A fresh warning for each unavailable streak.
        assert len(recorder.of(EarlyWarningEvent)) == 2
        assert 60 in clock.sleeps

    @pytest.mark.asyncio
    async def test_recheck_resumes_after_exhaustion(self):
        provider = FakeProvider("ollama", availability=[False])
        _, poller, _, recorder = setup(provider, policy=PollingPolicy(max_attempts=3))
        await poller.start()
        await poller.wait_stopped()
        assert poller.state_for("ollama").phase is PollerPhase.EXHAUSTED

        provider.availability = [True]
        state = await poller.recheck()

        assert state.available
        assert state.phase is PollerPhase.AVAILABLE
        assert recorder.of(AvailabilityChangedEvent)[-1] == AvailabilityChangedEvent("ollama", True, 0)


# ─────────────────────────────────────────────────────────────
# Coordination
# ─────────────────────────────────────────────────────────────


class TestCoordination:
    @pytest.mark.asyncio
    async def test_follows_active_provider(self):
        down = FakeProvider("ollama", availability=[False])
        up = FakeProvider("openai", availability=[True])
        registry, poller, _, recorder = setup(down, up)

        def switch(event):
            if isinstance(event, ProviderStatusEvent) and event.attempt_count == 1:
                registry.set_active_provider("openai")

        poller.add_listener(switch)
        await poller.start()
        await poller.wait_stopped()

        assert poller.tracked_provider_id == "openai"
        assert poller.state_for("openai").available
        assert poller.state_for("ollama").attempt_count == 1
        assert down.probe_count == 2
        assert recorder.of(AvailabilityChangedEvent) == [AvailabilityChangedEvent("openai", True, 0)]

    @pytest.mark.asyncio
    async def test_returning_to_exhausted_provider_starts_fresh(self):
        first = FakeProvider("ollama", availability=[False])
        second = FakeProvider("openai", availability=[False])
        policy = PollingPolicy(early_warning_threshold=3, max_attempts=5)
        registry, poller, _, recorder = setup(first, second, policy=policy)

        await poller.start()
        await poller.wait_stopped()
        assert poller.state_for("ollama").phase is PollerPhase.EXHAUSTED

        def switch_back(event):
            if isinstance(event, ProviderStatusEvent) and event.provider_id == "openai":
                if event.attempt_count == 1:
                    registry.set_active_provider("ollama")

        poller.add_listener(switch_back)
        registry.set_active_provider("openai")
        await poller.start()
        await poller.wait_stopped()

        def attempts(event_type):
            return [e.attempt_count for e in recorder.of(event_type) if e.provider_id == "ollama"]

        assert attempts(ExhaustedEvent) == [5, 5]
        assert attempts(EarlyWarningEvent) == [3, 3]
        assert poller.state_for("ollama").phase is PollerPhase.EXHAUSTED
        assert poller.state_for("openai").phase is PollerPhase.STOPPED
        assert poller.state_for("openai").attempt_count == 1

    @pytest.mark.asyncio
    async def test_poller_never_changes_active_provider(self):
        registry, poller, _, _ = setup(
            FakeProvider("ollama", availability=[False]),
            FakeProvider("openai", availability=[True]),
            policy=PollingPolicy(max_attempts=3),
        )
        await poller.start()
        await poller.wait_stopped()
        assert registry.active_provider_id == "ollama"

    @pytest.mark.asyncio
    async def test_overlapping_probe_is_skipped(self):
        gate = asyncio.Event()

        class SlowProvider(FakeProvider):
            async def is_available(self):
                self.probe_count += 1
                await gate.wait()
                return True

        provider = SlowProvider("ollama")
        _, poller, _, _ = setup(provider)
        first = asyncio.ensure_future(poller._probe(provider))
        await asyncio.sleep(0)
        assert await poller._probe(provider) is None
        gate.set()
        assert await first is True
        assert provider.probe_count == 1

    @pytest.mark.asyncio
    async def test_stop_marks_waiting_state_stopped(self):
        provider = FakeProvider("ollama", availability=[False])
        registry = ProviderRegistry()
        registry.register(provider)
        never = asyncio.Event()

        async def blocked_sleep(delay):
            await never.wait()

        poller = AvailabilityPoller(registry, sleep=blocked_sleep)
        await poller.start()
        assert poller.running
        await poller.stop()
        assert not poller.running
        assert poller.state_for("ollama").phase is PollerPhase.STOPPED

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_polling(self):
        def explode(event):
            raise RuntimeError("listener bug")

        _, poller, _, recorder = setup(
            FakeProvider("ollama", availability=[False]), policy=PollingPolicy(max_attempts=4)
        )
        poller.add_listener(explode)
        await poller.start()
        await poller.wait_stopped()
        assert len(recorder.of(ExhaustedEvent)) == 1

    @pytest.mark.asyncio
    async def test_remove_listener(self):
        _, poller, _, recorder = setup(FakeProvider("ollama", availability=[True]))
        extra = Recorder()
        remove = poller.add_listener(extra)
        remove()
        await poller.start()
        assert extra.events == []
        assert recorder.events


class TestPollingPolicy:
    def test_from_config(self):
        policy = PollingPolicy.from_config(
            {"base_interval": 5, "max_attempts": 12, "keep_polling_when_available": True}
        )
        assert policy.base_interval == 5.0
        assert policy.max_attempts == 12
        assert policy.early_warning_threshold == 3
        assert policy.keep_polling_when_available is True
        assert policy.healthy_interval is None

    def test_rejects_invalid_values(self):
        with pytest.raises(ValueError):
            PollingPolicy(base_interval=0)
        with pytest.raises(ValueError):
            PollingPolicy(max_attempts=0)
