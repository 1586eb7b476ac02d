import asyncio
import threading

import pytest

from loralab.engine import TrainingEngine
from loralab.model import TinyCausalLM
from loralab.protocol import Message, MessageType
from loralab.session import TrainingSession, TrainingStatus
from loralab.worker import TrainingWorker

CORPUS = ("The quick brown fox jumps over the lazy dog. " * 250)[:10000]
LONG_CORPUS = CORPUS * 10


def _config(max_steps=12, **overrides):
    config = {
        "adapter": {"rank": 4, "alpha": 8.0, "target_modules": ["q_proj"]},
        "max_steps": max_steps,
        "sequence_length": 128,
        "rank_strategy": "fixed",
        "device": "cpu",
    }
    config.update(overrides)
    return config


def _start_message(dataset=CORPUS, **config):
    return Message(
        type=MessageType.INITIALIZE_AND_START,
        data={"modelSource": TinyCausalLM(seed=0), "dataset": dataset, "trainingConfig": _config(**config)},
    )


async def _collect_until(worker, kind, timeout=60.0):
    """Drain the outbox until ``kind`` arrives; returns every message seen."""
    seen = []
    while True:
        message = await asyncio.wait_for(worker.outbox.get(), timeout)
        seen.append(message)
        if message.type is kind:
            return seen


@pytest.fixture
async def worker():
    worker = TrainingWorker()
    task = asyncio.create_task(worker.serve())
    yield worker
    await worker.inbox.put(Message(type=MessageType.SHUTDOWN))
    await asyncio.wait_for(task, 60)


class TestWorker:
    """Message protocol against a live worker."""

    async def test_runs_to_completion(self, worker):
        await worker.inbox.put(_start_message(max_steps=12))
        messages = await _collect_until(worker, MessageType.TRAINING_COMPLETED)

        assert messages[0].type is MessageType.TRAINING_STARTED
        assert messages[0].data["totalSteps"] == 12
        progress = [m.data["step"] for m in messages if m.type is MessageType.TRAINING_PROGRESS]
        assert progress == list(range(1, 11))

        completed = messages[-1].data
        assert completed["totalSteps"] == 12
        assert completed["adapterData"]["layers"]["q_proj"]["A"]["shape"] == [64, 4]
        assert worker.session.status is TrainingStatus.COMPLETED
        assert not worker.has_active_session

    async def test_pause_blocks_second_session(self, worker):
        await worker.inbox.put(_start_message(LONG_CORPUS, max_steps=500))
        await _collect_until(worker, MessageType.TRAINING_STARTED)

        await worker.inbox.put(Message(type=MessageType.PAUSE_TRAINING))
        paused = (await _collect_until(worker, MessageType.TRAINING_PAUSED))[-1]
        paused_step = paused.data["step"]

        await worker.inbox.put(_start_message(max_steps=50))
        error = (await _collect_until(worker, MessageType.ERROR))[-1]
        assert error.data["message"] == "Training already in progress"

        await asyncio.sleep(0.2)
        await worker.inbox.put(Message(type=MessageType.GET_STATUS))
        status = (await _collect_until(worker, MessageType.STATUS_UPDATE))[-1].data
        assert status["isPaused"]
        assert not status["isTraining"]
        assert status["currentStep"] == paused_step

        await worker.inbox.put(Message(type=MessageType.RESUME_TRAINING))
        resumed = (await _collect_until(worker, MessageType.TRAINING_RESUMED))[-1]
        assert resumed.data["step"] == paused_step

        await worker.inbox.put(Message(type=MessageType.STOP_TRAINING))
        await _collect_until(worker, MessageType.TRAINING_STOPPED)
        assert worker.session.status is TrainingStatus.ABORTED

    async def test_stop_releases_buffers_first(self, worker):
        await worker.inbox.put(_start_message(LONG_CORPUS, max_steps=500))
        await _collect_until(worker, MessageType.TRAINING_PROGRESS)

        await worker.inbox.put(Message(type=MessageType.STOP_TRAINING))
        stopped = (await _collect_until(worker, MessageType.TRAINING_STOPPED))[-1]

        assert worker.session.arena.released
        assert stopped.data["step"] == worker.session.current_step
        assert stopped.data["step"] < 500

    async def test_stop_during_completion_sends_no_stopped(self, worker, monkeypatch):
        entered, release = threading.Event(), threading.Event()
        complete = TrainingSession.complete

        def slow_complete(session):
            entered.set()
            release.wait(30)
            return complete(session)

        monkeypatch.setattr(TrainingSession, "complete", slow_complete)
        await worker.inbox.put(_start_message(max_steps=12))
        assert await asyncio.to_thread(entered.wait, 60)

        await worker.inbox.put(Message(type=MessageType.STOP_TRAINING))
        await asyncio.sleep(0.2)
        release.set()
        messages = await _collect_until(worker, MessageType.TRAINING_COMPLETED)
        await worker.inbox.put(Message(type=MessageType.GET_STATUS))
        messages += await _collect_until(worker, MessageType.STATUS_UPDATE)

        assert MessageType.TRAINING_STOPPED not in [m.type for m in messages]
        assert messages[-1].data["status"] == "completed"
        assert worker.session.status is TrainingStatus.COMPLETED

    async def test_pause_without_session(self, worker):
        await worker.inbox.put(Message(type=MessageType.PAUSE_TRAINING))
        error = (await _collect_until(worker, MessageType.ERROR))[-1]
        assert error.data == {"message": "No active training to pause", "step": None}

    async def test_idle_status(self, worker):
        await worker.inbox.put({"type": "GET_STATUS"})
        status = (await _collect_until(worker, MessageType.STATUS_UPDATE))[-1].data
        assert status["status"] == "idle"
        assert status["currentStep"] == 0

    async def test_unknown_message_type(self, worker):
        await worker.inbox.put({"type": "REWIND_TRAINING"})
        error = (await _collect_until(worker, MessageType.ERROR))[-1]
        assert "REWIND_TRAINING" in error.data["message"]

    async def test_setup_failure_reported(self, worker):
        await worker.inbox.put(
            Message(
                type=MessageType.INITIALIZE_AND_START,
                data={"modelSource": TinyCausalLM(), "dataset": "too short", "trainingConfig": _config()},
            )
        )
        error = (await _collect_until(worker, MessageType.ERROR))[-1]
        assert "fewer than one sequence" in error.data["message"]
        assert not worker.has_active_session


class TestEngine:
    """Host-side controller end to end."""

    async def test_train_and_wait(self):
        progress_steps = []
        async with TrainingEngine() as engine:
            done = asyncio.get_running_loop().create_future()
            engine.on("training_progress", lambda data: progress_steps.append(data["step"]))
            engine.on("training_completed", done.set_result)

            await engine.start_training(TinyCausalLM(seed=0), CORPUS, _config(max_steps=12))
            started = await engine.wait_for("training_started", timeout=60)
            assert started["totalSteps"] == 12

            completed = await asyncio.wait_for(done, 120)

        assert completed["totalSteps"] == 12
        assert progress_steps == list(range(1, 11))
        assert not engine.is_training
        assert engine.training_state["currentStep"] == 10

    async def test_failing_listener_does_not_stop_events(self):
        async with TrainingEngine() as engine:
            def broken(data):
                raise RuntimeError("listener bug")

            engine.on("status_update", broken)
            await engine.request_status()
            status = await engine.wait_for("status_update", timeout=10)

        assert status["status"] == "idle"

    async def test_off_removes_listener(self):
        seen = []
        async with TrainingEngine() as engine:
            engine.on("status_update", seen.append)
            engine.off("status_update", seen.append)
            await engine.request_status()
            await engine.wait_for("status_update", timeout=10)

        assert seen == []


def test_message_wire_roundtrip():
    message = Message.from_dict({"type": "TRAINING_PROGRESS", "data": {"step": 3}})
    assert message.type is MessageType.TRAINING_PROGRESS
    assert message.type.event_name == "training_progress"
    assert message.to_dict() == {"type": "TRAINING_PROGRESS", "data": {"step": 3}}
    assert Message.from_dict({"type": "GET_STATUS"}).data == {}


def test_engine_error_tracking_follows_payload():
    engine = TrainingEngine()
    engine._track(Message(type=MessageType.TRAINING_STARTED, data={"totalSteps": 5}))

    engine._track(Message(type=MessageType.ERROR, data={"message": "Training already in progress", "step": None}))
    assert engine.is_training

    engine._track(Message(type=MessageType.ERROR, data={"message": "Training step 3 failed", "step": 3}))
    assert not engine.is_training
    assert not engine.is_paused
