import multiprocessing
import os
import threading
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from pathlib import Path

import pytest

from infographics.models import Frame, ImageSource, JobOutcome, RenderJob, Scene
from infographics.scheduler import BatchScheduler, ProgressCounter, resolve_parallelism


def _jobs(names, tmp_path: Path):
    scene = Scene.build(Frame(10, 10), [], {}, b"")
    return [
        RenderJob(source=ImageSource(path=str(tmp_path / n), name=n), scene=scene, output_dir=tmp_path)
        for n in names
    ]


def _ok(job: RenderJob) -> JobOutcome:
    return JobOutcome(name=job.source.name, output_path=f"/out/{job.source.name}.png")


@pytest.mark.parametrize(
    "requested, cores, expected",
    [
        (None, 8, 4),
        (None, 1, 1),
        (None, 3, 1),
        (0, 8, 1),
        (-5, 8, 1),
        (100, 8, 8),
        (3, 8, 3),
    ],
)
def test_resolve_parallelism_clamps(requested, cores, expected):
    assert resolve_parallelism(requested, cores) == expected


def test_progress_counter_counts_across_threads():
    counter = ProgressCounter(total=400)
    seen = []
    lock = threading.Lock()

    def bump():
        for _ in range(100):
            value = counter.increment()
            with lock:
                seen.append(value)

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(seen) == list(range(1, 401))
    assert counter.value == 400


def test_progress_reports_each_completion_once(tmp_path):
    names = [f"img{i}.png" for i in range(7)]
    events = []

    scheduler = BatchScheduler(3, executor_factory=ThreadPoolExecutor, worker=_ok)
    result = scheduler.run(_jobs(names, tmp_path), on_progress=events.append)

    assert [e.current for e in events] == list(range(1, 8))
    assert all(e.total == 7 for e in events)
    assert sorted(e.current_file for e in events) == sorted(names)
    assert result.success
    assert len(result.generated_files) == 7


def test_completion_order_is_not_submission_order(tmp_path):
    second_done = threading.Event()

    def worker(job):
        if job.source.name == "first.png":
            assert second_done.wait(timeout=5)
        else:
            second_done.set()
        return _ok(job)

    events = []
    scheduler = BatchScheduler(2, executor_factory=ThreadPoolExecutor, worker=worker)
    result = scheduler.run(_jobs(["first.png", "second.png"], tmp_path), on_progress=events.append)

    assert [e.current_file for e in events] == ["second.png", "first.png"]
    assert result.generated_files == ["/out/second.png.png", "/out/first.png.png"]


def test_never_exceeds_parallelism_and_refills_immediately(tmp_path):
    lock = threading.Lock()
    running = 0
    peak = 0
    slow_release = threading.Event()
    finished = []

    def worker(job):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        try:
            if job.source.name == "slow.png":
                # Stays busy until every other job got through the free slot.
                assert slow_release.wait(timeout=5)
            else:
                time.sleep(0.01)
        finally:
            with lock:
                running -= 1
        with lock:
            finished.append(job.source.name)
            if len(finished) == 4:
                slow_release.set()
        return _ok(job)

    names = ["slow.png", "a.png", "b.png", "c.png", "d.png"]
    scheduler = BatchScheduler(2, executor_factory=ThreadPoolExecutor, worker=worker)
    result = scheduler.run(_jobs(names, tmp_path))

    assert peak <= 2
    assert finished[-1] == "slow.png"
    assert len(result.generated_files) == 5


def test_failures_are_isolated(tmp_path):
    def worker(job):
        if job.source.name == "bad.png":
            return JobOutcome(name=job.source.name, error="Failed to load bad.png: missing")
        if job.source.name == "boom.png":
            raise ValueError("kaboom")
        return _ok(job)

    events = []
    scheduler = BatchScheduler(2, executor_factory=ThreadPoolExecutor, worker=worker)
    result = scheduler.run(
        _jobs(["a.png", "bad.png", "boom.png", "b.png"], tmp_path),
        on_progress=events.append,
    )

    assert not result.success
    assert len(result.generated_files) == 2
    assert "Failed to load bad.png: missing" in result.errors
    assert any(e.startswith("Task failed: boom.png") and "kaboom" in e for e in result.errors)
    assert [e.current for e in events] == [1, 2, 3, 4]


def test_broken_progress_callback_does_not_stop_batch(tmp_path):
    def callback(event):
        raise RuntimeError("observer went away")

    scheduler = BatchScheduler(2, executor_factory=ThreadPoolExecutor, worker=_ok)
    result = scheduler.run(_jobs(["a.png", "b.png", "c.png"], tmp_path), on_progress=callback)

    assert result.success
    assert len(result.generated_files) == 3


def test_empty_batch_succeeds(tmp_path):
    events = []
    result = BatchScheduler(2, executor_factory=ThreadPoolExecutor, worker=_ok).run([], events.append)

    assert result.success
    assert result.generated_files == [] and result.errors == []
    assert events == []


def test_one_missing_hero_out_of_five(tmp_path, make_image, make_job):
    paths = [make_image(f"photo{i}.png") for i in range(1, 6)]
    paths[2].unlink()
    jobs = [make_job(p, objects=[{"id": "h", "type": "hero", "width": 200, "height": 100}]) for p in paths]

    events = []
    scheduler = BatchScheduler(3, executor_factory=ThreadPoolExecutor)
    result = scheduler.run(jobs, on_progress=events.append)

    assert not result.success
    assert len(result.generated_files) == 4
    assert len(result.errors) == 1
    assert "photo3.png" in result.errors[0]
    assert all(Path(p).exists() for p in result.generated_files)
    assert [e.current for e in events] == [1, 2, 3, 4, 5]


def test_process_pool_renders_batch(make_image, make_job):
    paths = [make_image(f"p{i}.png", color=(0, 0, 255)) for i in range(3)]
    jobs = [make_job(p, objects=[{"id": "h", "type": "hero", "width": 200, "height": 100}]) for p in paths]

    events = []
    result = BatchScheduler(2).run(jobs, on_progress=events.append)

    assert result.success, result.errors
    assert sorted(Path(p).name for p in result.generated_files) == [
        "p0_infographic.png",
        "p1_infographic.png",
        "p2_infographic.png",
    ]
    assert [e.current for e in events] == [1, 2, 3]


def _exit_on_photo3(job: RenderJob) -> JobOutcome:
    if job.source.name == "photo3.png":
        os._exit(1)
    time.sleep(0.05)
    return _ok(job)


def _forked_pool(size: int) -> ProcessPoolExecutor:
    return ProcessPoolExecutor(size, mp_context=multiprocessing.get_context("fork"))


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(),
    reason="needs the fork start method",
)
def test_dead_worker_process_only_fails_its_own_job(tmp_path):
    names = [f"photo{i}.png" for i in range(1, 6)]
    events = []

    scheduler = BatchScheduler(2, executor_factory=_forked_pool, worker=_exit_on_photo3)
    result = scheduler.run(_jobs(names, tmp_path), on_progress=events.append)

    assert len(result.generated_files) == 4, result.errors
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Task failed: photo3.png")
    assert [e.current for e in events] == [1, 2, 3, 4, 5]


def test_jobs_caught_in_a_broken_pool_are_retried_alone(tmp_path):
    lock = threading.Lock()
    attempts = {}
    running = 0
    alone_on_retry = []

    def worker(job):
        nonlocal running
        name = job.source.name
        with lock:
            attempts[name] = attempts.get(name, 0) + 1
            attempt = attempts[name]
            running += 1
            if attempt > 1:
                alone_on_retry.append(running == 1)
        try:
            time.sleep(0.02)
            if name == "crash.png" or (name == "victim.png" and attempt == 1):
                raise BrokenProcessPool("A process in the process pool was terminated abruptly")
            return _ok(job)
        finally:
            with lock:
                running -= 1

    factories = []

    def factory(size):
        factories.append(size)
        return ThreadPoolExecutor(size)

    events = []
    scheduler = BatchScheduler(2, executor_factory=factory, worker=worker)
    result = scheduler.run(
        _jobs(["crash.png", "victim.png", "a.png", "b.png"], tmp_path),
        on_progress=events.append,
    )

    assert sorted(result.generated_files) == ["/out/a.png.png", "/out/b.png.png", "/out/victim.png.png"]
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Task failed: crash.png")
    assert attempts["crash.png"] == 2
    assert attempts["victim.png"] == 2
    assert alone_on_retry and all(alone_on_retry)
    assert len(factories) >= 2
    assert [e.current for e in events] == [1, 2, 3, 4]
