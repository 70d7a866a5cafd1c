import json
from unittest.mock import Mock

import pytest

from cloudprnt_queue.core.exceptions import error_registry
from cloudprnt_queue.models.job import JobStatus, ContentType
from cloudprnt_queue.models.printer import PrinterEndpoint


async def _enqueue(enqueue_service, key="order-1", payload=b"ticket", **kwargs):
    return await enqueue_service.enqueue("kitchen-1", key, payload, **kwargs)


@pytest.mark.asyncio
async def test_status_poll_announces_job_without_claiming(enqueue_service, dispatcher, store):
    queued = await _enqueue(enqueue_service, content_type=ContentType.ESCPOS)

    answer = await dispatcher.handle_status_report("kitchen-1", b'{"statusCode": "200 OK"}')

    assert answer.job_ready is True
    assert answer.job_token == queued.job_id
    assert answer.media_types == [ContentType.ESCPOS]
    assert answer.to_dict() == {
        "jobReady": True,
        "mediaTypes": [ContentType.ESCPOS],
        "jobToken": queued.job_id,
    }
    assert (await store.get(queued.job_id)).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_status_poll_without_work(dispatcher):
    answer = await dispatcher.handle_status_report("kitchen-1", b"")
    assert answer.to_dict() == {"jobReady": False}


@pytest.mark.asyncio
async def test_full_poll_cycle(enqueue_service, dispatcher, store):
    queued = await _enqueue(enqueue_service)

    await dispatcher.handle_status_report("kitchen-1", {"statusCode": "200 OK"})
    job = await dispatcher.fetch_content("kitchen-1", ContentType.TEXT_PLAIN)
    assert job.id == queued.job_id
    assert job.payload == b"ticket"
    assert job.status == JobStatus.DELIVERED

    report = {"jobToken": job.id, "jobStatus": "printed"}
    answer = await dispatcher.handle_status_report("kitchen-1", json.dumps(report))

    assert answer.job_ready is False
    printed = await store.get(job.id)
    assert printed.status == JobStatus.PRINTED
    assert printed.created_at <= printed.delivered_at <= printed.printed_at


@pytest.mark.asyncio
async def test_reported_outcome_is_applied_before_next_job_is_offered(enqueue_service, dispatcher, store):
    first = await _enqueue(enqueue_service, key="a")
    second = await _enqueue(enqueue_service, key="b")
    await dispatcher.fetch_content("kitchen-1")

    answer = await dispatcher.handle_status_report(
        "kitchen-1", {"jobToken": first.job_id, "jobStatus": "failed", "errorMessage": "paper out"}
    )

    failed = await store.get(first.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.last_error == "paper out"
    assert failed.next_retry_at is not None
    assert answer.job_token == second.job_id


@pytest.mark.asyncio
async def test_fetch_without_work_returns_none(dispatcher):
    assert await dispatcher.fetch_content("kitchen-1") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    b"{not json",
    b"[1, 2, 3]",
    b'{"printingInProgress": "yes"}',
    b'{"jobStatus": "exploded", "jobToken": "x"}',
    b"\xff\xfe",
])
async def test_malformed_poll_is_answered_with_no_work(enqueue_service, dispatcher, reporter, body):
    await _enqueue(enqueue_service)
    error_registry.reset()

    answer = await dispatcher.handle_status_report("kitchen-1", body)

    assert answer.job_ready is False
    assert error_registry.error_counts.get("ProtocolError") == 1
    assert reporter.protocol_errors.labels(printer_id="kitchen-1")._value.get() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("printer_id, tracked", [("unknown-9", False), ("old-1", True)])
async def test_unknown_or_inactive_printer_gets_no_work(dispatcher, printers, printer_id, tracked):
    answer = await dispatcher.handle_status_report(printer_id, b"{}")

    assert answer.job_ready is False
    assert await dispatcher.fetch_content(printer_id) is None
    assert (printers.last_poll(printer_id) is not None) is tracked


@pytest.mark.asyncio
async def test_polls_from_unregistered_ids_are_not_remembered(dispatcher, printers):
    for n in range(50):
        await dispatcher.handle_status_report(f"scanner-{n}", b"{}")
        await dispatcher.confirm(f"scanner-{n}", "job-1", "200 OK")

    assert printers._last_poll == {}


@pytest.mark.asyncio
async def test_media_type_mismatch_still_serves_job_type(enqueue_service, dispatcher):
    await _enqueue(enqueue_service, content_type=ContentType.ESCPOS)

    job = await dispatcher.fetch_content("kitchen-1", ContentType.STAR_PRNT)

    assert job.content_type == ContentType.ESCPOS


@pytest.mark.asyncio
async def test_delivery_warns_when_printer_does_not_accept_content_type(
        enqueue_service, dispatcher, printers, monkeypatch):
    printers.register(PrinterEndpoint("label-1", "Labels", media_types=[ContentType.TEXT_PLAIN]))
    await enqueue_service.enqueue("label-1", "label-1", b"\x1b@", content_type=ContentType.ESCPOS)
    warning = Mock()
    monkeypatch.setattr(dispatcher.logger, "warning", warning)

    job = await dispatcher.fetch_content("label-1")

    assert job.content_type == ContentType.ESCPOS
    warning.assert_called_once()
    assert warning.call_args.kwargs["extra"]["media_types"] == [ContentType.TEXT_PLAIN]


@pytest.mark.asyncio
async def test_confirmation_marks_printed(enqueue_service, dispatcher, store):
    await _enqueue(enqueue_service)
    job = await dispatcher.fetch_content("kitchen-1")

    result = await dispatcher.confirm("kitchen-1", job.id, "200 OK")

    assert result.applied
    assert (await store.get(job.id)).status == JobStatus.PRINTED


@pytest.mark.asyncio
async def test_confirmation_with_error_code_marks_failed(enqueue_service, dispatcher, store):
    await _enqueue(enqueue_service)
    job = await dispatcher.fetch_content("kitchen-1")

    await dispatcher.confirm("kitchen-1", job.id, "520 Printer offline")

    failed = await store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert "520" in failed.last_error


@pytest.mark.asyncio
async def test_confirmation_for_other_printers_job_is_ignored(enqueue_service, dispatcher, store):
    await _enqueue(enqueue_service)
    job = await dispatcher.fetch_content("kitchen-1")

    assert await dispatcher.confirm("bar-1", job.id, "200 OK") is None
    assert (await store.get(job.id)).status == JobStatus.DELIVERED


@pytest.mark.asyncio
async def test_duplicate_confirmation_is_a_noop(enqueue_service, dispatcher):
    await _enqueue(enqueue_service)
    job = await dispatcher.fetch_content("kitchen-1")

    await dispatcher.confirm("kitchen-1", job.id, "200 OK")
    again = await dispatcher.confirm("kitchen-1", job.id, "200 OK")

    assert again.applied is False
    assert again.status == JobStatus.PRINTED
