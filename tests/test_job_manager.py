"""
Tests for the job registry, the delivery handoff and upload forwarding.
"""

import io
import logging
import threading
import time

import httpx
import pytest

from helpers import copy_command, file_part, task, text_fields, write_bytes_command
from upload_optimizer.errors import JobNotFoundError, JobRetiredError, PipelineError
from upload_optimizer.job_manager import JobManager, JobRecord, JobRegistry, RedirectPolicy, UploadResult
from upload_optimizer.tasks import UploadDescriptor
from upload_optimizer.upstream import UpstreamForm
from upload_optimizer.utils import PrefixedLogger

LOG = PrefixedLogger(logging.getLogger("tests"))


def make_upload(directory, name="photo.jpg", content=b"j" * 2048):
    return UploadDescriptor.from_stream(name, io.BytesIO(content), directory)


def make_form():
    return UpstreamForm(
        path="/api/assets",
        field_name="assetData",
        fields=[("deviceAssetId", "photo-1"), ("deviceId", "phone")],
        headers=[("x-api-key", "secret"), ("content-length", "999"), ("host", "proxy.local")],
    )


def track_retirements(manager, monkeypatch):
    calls = []
    original = manager.registry.retire

    def retire(job_id):
        removed = original(job_id)
        calls.append(removed)
        return removed

    monkeypatch.setattr(manager.registry, "retire", retire)
    return calls


@pytest.fixture
def manager(make_processor, fake_upstream):
    manager = JobManager(
        make_processor([task("copy", ["jpg"], copy_command())]),
        fake_upstream.client(),
        max_workers=4,
        delivery_timeout=2.0,
        ack_timeout=2.0,
        wait_timeout=2.0,
    )
    yield manager
    manager.shutdown(wait=True)


class TestRedirectPolicy:
    """Tests for deciding which clients get the redirect flow."""

    def test_mobile_app_is_served_directly(self):
        policy = RedirectPolicy()
        assert not policy("Dart/3.3 (dart:io)")

    def test_other_clients_follow_redirects(self):
        policy = RedirectPolicy()
        assert policy("Mozilla/5.0 (X11; Linux x86_64)")
        assert policy("immich-cli/2.2")
        assert policy(None)

    def test_custom_prefixes(self):
        policy = RedirectPolicy(["curl/", "Wget/"])
        assert not policy("curl/8.5.0")
        assert policy("Dart/3.3")


class TestJobRecord:
    """Tests for the single-use handoff slot."""

    def test_offer_is_taken_by_consumer(self):
        record = JobRecord("job-1")
        response = httpx.Response(200, content=b"ok")
        taken = []

        consumer = threading.Thread(target=lambda: taken.append(record.take(2.0)))
        consumer.start()

        assert record.offer(response, 2.0)
        consumer.join(timeout=5)
        assert taken == [response]

    def test_offer_times_out_without_consumer(self):
        record = JobRecord("job-1")

        assert not record.offer(httpx.Response(200), 0.05)
        assert record.take(0.01) is None

    def test_take_times_out_without_offer(self):
        record = JobRecord("job-1")

        start = time.monotonic()
        assert record.take(0.05) is None
        assert time.monotonic() - start >= 0.05

    def test_response_is_taken_only_once(self):
        record = JobRecord("job-1")
        consumer = threading.Thread(target=lambda: record.take(2.0))
        consumer.start()

        assert record.offer(httpx.Response(200), 2.0)
        consumer.join(timeout=5)
        assert record.take(0.01) is None

    def test_take_on_closed_record_raises(self):
        record = JobRecord("job-1")
        record.close()

        with pytest.raises(JobRetiredError):
            record.take(1.0)
        assert not record.offer(httpx.Response(200), 0.01)

    def test_acknowledgement(self):
        record = JobRecord("job-1")
        assert not record.wait_acknowledged(0.01)

        record.acknowledge()
        assert record.wait_acknowledged(0.01)


class TestJobRegistry:
    """Tests for the lock-guarded job mapping."""

    def test_create_registers_unique_ids(self):
        registry = JobRegistry()
        first = registry.create()
        second = registry.create()

        assert first.id != second.id
        assert len(first.id) == 32
        assert registry.get(first.id) is first
        assert second.id in registry
        assert len(registry) == 2

    def test_retire_happens_once(self):
        registry = JobRegistry()
        record = registry.create()

        assert registry.retire(record.id)
        assert not registry.retire(record.id)
        assert record.closed
        assert registry.get(record.id) is None

    def test_job_logger_keeps_request_prefix(self):
        registry = JobRegistry()
        record = registry.create(LOG.child("client with broken redirects: "))

        assert record.log.prefix == f"client with broken redirects: job {record.id}: "


class TestProcessUpload:
    """Tests for running the pipeline and forwarding the winning file."""

    def test_smaller_result_replaces_upload(self, make_processor, fake_upstream, work_dir):
        manager = JobManager(make_processor([task("to-jxl", ["heic"], write_bytes_command(512, "jxl"))]), fake_upstream.client())
        try:
            with make_upload(work_dir, "IMG_0001.HEIC", b"h" * 4096) as upload:
                result = manager.process_upload(upload, make_form(), LOG)
            result.response.close()
        finally:
            manager.shutdown(wait=True)

        assert result.replaced
        assert result.filename == "IMG_0001.jxl"
        [request] = fake_upstream.uploads
        part = file_part(request)
        assert part["filename"] == "IMG_0001.jxl"
        assert part["body"] == b"\0" * 512

    def test_larger_result_keeps_original(self, make_processor, fake_upstream, work_dir):
        manager = JobManager(make_processor([task("bigger", ["jpg"], write_bytes_command(9000, "webp"))]), fake_upstream.client())
        try:
            with make_upload(work_dir) as upload:
                result = manager.process_upload(upload, make_form(), LOG)
            result.response.close()
        finally:
            manager.shutdown(wait=True)

        assert not result.replaced
        part = file_part(fake_upstream.uploads[0])
        assert part["filename"] == "photo.jpg"
        assert part["body"] == b"j" * 2048

    def test_form_fields_and_headers_are_forwarded(self, manager, fake_upstream, work_dir):
        with make_upload(work_dir) as upload:
            manager.process_upload(upload, make_form(), LOG).response.close()

        [request] = fake_upstream.uploads
        assert text_fields(request) == {"deviceAssetId": "photo-1", "deviceId": "phone"}
        assert request.headers["x-api-key"] == "secret"
        assert request.headers["host"] == "immich.test"
        assert request.headers["content-length"] != "999"
        assert request.headers["content-type"].startswith("multipart/form-data; boundary=")

    def test_run_direct_reads_response_and_removes_upload(self, manager, work_dir):
        upload = make_upload(work_dir)

        response = manager.run_direct(upload, make_form(), LOG)

        assert response.status_code == 201
        assert response.json() == {"id": "asset-1", "status": "created"}
        assert not upload.path.exists()


class TestJobLifecycle:
    """Tests for background jobs and their delivery to wait requests."""

    def test_delivered_job_is_retired_once(self, manager, monkeypatch, work_dir):
        retirements = track_retirements(manager, monkeypatch)
        upload = make_upload(work_dir)

        record = manager.start_job(upload, make_form())
        waited, response = manager.wait(record.id)
        assert waited is record
        assert response.status_code == 201
        response.read()
        response.close()
        record.acknowledge()

        manager.shutdown(wait=True)
        assert retirements == [True]
        assert record.id not in manager.registry
        assert not upload.path.exists()

    def test_uncollected_job_is_retired_once(self, manager, monkeypatch, work_dir):
        retirements = track_retirements(manager, monkeypatch)
        manager.delivery_timeout = 0.05

        record = manager.start_job(make_upload(work_dir), make_form())
        manager.shutdown(wait=True)

        assert retirements == [True]
        with pytest.raises(JobNotFoundError):
            manager.wait(record.id)

    def test_unacknowledged_job_is_retired_once(self, manager, monkeypatch, work_dir):
        retirements = track_retirements(manager, monkeypatch)
        manager.ack_timeout = 0.05

        record = manager.start_job(make_upload(work_dir), make_form())
        _, response = manager.wait(record.id)
        manager.shutdown(wait=True)
        response.close()

        assert retirements == [True]
        assert record.closed

    def test_pipeline_failure_retires_without_forwarding(self, manager, monkeypatch, fake_upstream, work_dir):
        retirements = track_retirements(manager, monkeypatch)
        upload = make_upload(work_dir, "video.mp4")

        manager.start_job(upload, make_form())
        manager.shutdown(wait=True)

        assert retirements == [True]
        assert fake_upstream.uploads == []
        assert not upload.path.exists()

    def test_waiting_consumer_sees_failed_job(self, manager, monkeypatch, work_dir):
        release = threading.Event()

        def failing_upload(upload, form, log):
            release.wait(5)
            raise PipelineError("task copy failed: exit status 1")

        monkeypatch.setattr(manager, "process_upload", failing_upload)
        record = manager.start_job(make_upload(work_dir), make_form())
        threading.Timer(0.1, release.set).start()

        with pytest.raises(JobRetiredError):
            manager.wait(record.id)

    def test_wait_times_out_while_job_keeps_running(self, manager, monkeypatch, work_dir):
        retirements = track_retirements(manager, monkeypatch)
        release = threading.Event()

        def slow_upload(upload, form, log):
            release.wait(5)
            return UploadResult(response=httpx.Response(201, content=b"done"), filename=upload.filename, replaced=False)

        monkeypatch.setattr(manager, "process_upload", slow_upload)
        manager.wait_timeout = 0.05
        record = manager.start_job(make_upload(work_dir), make_form())

        _, response = manager.wait(record.id)
        assert response is None
        assert record.id in manager.registry

        release.set()
        for _ in range(100):
            _, response = manager.wait(record.id)
            if response is not None:
                break
        assert response.read() == b"done"
        response.close()
        record.acknowledge()

        manager.shutdown(wait=True)
        assert retirements == [True]

    def test_unknown_job(self, manager):
        with pytest.raises(JobNotFoundError):
            manager.wait("0123456789abcdef")
        with pytest.raises(JobNotFoundError):
            manager.wait("")
