from __future__ import annotations

import threading

import pytest

from conftest import FakeMailbox, graph_item
from application.services.fetch_engine import MessageFetcher
from application.services.retry import RetryPolicy
from domain.errors import FetchCancelled, FolderNotFound, NotAuthenticated, TransientFetchError
from domain.models import DateRange, LinkCursor, OffsetCursor


def test_short_page_ends_pagination_despite_stale_total(make_items):
    mailbox = FakeMailbox(make_items(123), total=200)
    fetcher = MessageFetcher(mailbox, batch_size=50)

    records = list(fetcher.fetch("inbox", limit=1000))

    assert len(records) == 123
    assert [top for top, _ in mailbox.page_calls] == [50, 50, 50]
    assert [c.skip for _, c in mailbox.page_calls] == [0, 50, 100]


def test_limit_truncates_last_request(make_items):
    mailbox = FakeMailbox(make_items(500))
    fetcher = MessageFetcher(mailbox, batch_size=50)

    records = list(fetcher.fetch("inbox", limit=60))

    assert len(records) == 60
    assert [top for top, _ in mailbox.page_calls] == [50, 10]


def test_exact_multiple_needs_one_empty_page(make_items):
    mailbox = FakeMailbox(make_items(100))
    fetcher = MessageFetcher(mailbox, batch_size=50)

    assert len(list(fetcher.fetch("inbox", limit=1000))) == 100
    assert len(mailbox.page_calls) == 3


def test_start_cursor_offsets_skip(make_items):
    mailbox = FakeMailbox(make_items(80))
    fetcher = MessageFetcher(mailbox, batch_size=50)

    records = list(fetcher.fetch("inbox", limit=1000, start=OffsetCursor(20)))

    assert len(records) == 60
    assert records[0].id == "AAMk-0020"
    assert [c.skip for _, c in mailbox.page_calls] == [20, 70]


def test_server_next_link_is_preferred(make_items):
    mailbox = FakeMailbox(make_items(120), use_next_link=True)
    fetcher = MessageFetcher(mailbox, batch_size=50)

    records = list(fetcher.fetch("inbox", limit=1000))

    assert len(records) == 120
    cursors = [c for _, c in mailbox.page_calls]
    assert isinstance(cursors[0], OffsetCursor)
    assert all(isinstance(c, LinkCursor) for c in cursors[1:])


def test_pages_keep_server_order(make_items):
    mailbox = FakeMailbox(make_items(7))
    fetcher = MessageFetcher(mailbox, batch_size=3)

    ids = [r.id for r in fetcher.fetch("inbox", limit=100)]

    assert ids == [f"AAMk-{i:04d}" for i in range(7)]


def test_duplicates_within_page_last_seen_wins():
    first = graph_item(1, subject="viejo")
    second = graph_item(1, subject="nuevo")
    mailbox = FakeMailbox([first, graph_item(2), second])
    fetcher = MessageFetcher(mailbox, batch_size=10)

    records = list(fetcher.fetch("inbox", limit=10))

    assert [r.id for r in records] == ["AAMk-0001", "AAMk-0002"]
    assert records[0].subject == "nuevo"


def test_unknown_folder_is_fatal(make_items):
    fetcher = MessageFetcher(FakeMailbox(make_items(3)))
    with pytest.raises(FolderNotFound):
        list(fetcher.fetch("Proyectos", limit=10))


def test_plan_clamps_total_and_builds_filter(make_items):
    from datetime import datetime, timezone

    fetcher = MessageFetcher(FakeMailbox(make_items(3), total=5000))
    plan = fetcher.plan(
        "inbox",
        limit=100,
        date_range=DateRange(start=datetime(2024, 1, 1, tzinfo=timezone.utc)),
    )

    assert plan.total == 100
    assert plan.odata_filter == "receivedDateTime ge 2024-01-01T00:00:00Z"


def test_attachment_failure_isolated_to_one_record(make_items):
    items = make_items(5, flagged=True)
    mailbox = FakeMailbox(items, failing_attachments={"AAMk-0002"})
    fetcher = MessageFetcher(mailbox, batch_size=50, retry=RetryPolicy(attempts=2, sleep=lambda s: None))

    records = list(fetcher.fetch("inbox", limit=10))

    assert len(records) == 5
    with_attachments = [r for r in records if r.attachments]
    assert len(with_attachments) == 4
    failed = next(r for r in records if r.id == "AAMk-0002")
    assert failed.attachments == []
    # dos intentos para el que falla, uno para el resto
    assert mailbox.attachment_calls.count("AAMk-0002") == 2


def test_attachments_only_for_flagged_records(make_items):
    items = make_items(4)
    items[1]["hasAttachments"] = True
    mailbox = FakeMailbox(items)

    list(MessageFetcher(mailbox).fetch("inbox", limit=10))

    assert mailbox.attachment_calls == ["AAMk-0001"]


def test_attachments_skipped_when_disabled(make_items):
    mailbox = FakeMailbox(make_items(4, flagged=True))

    records = list(MessageFetcher(mailbox).fetch("inbox", limit=10, include_attachments=False))

    assert mailbox.attachment_calls == []
    assert all(r.attachments == [] for r in records)


def test_not_authenticated_during_attachments_propagates(make_items):
    mailbox = FakeMailbox(make_items(3, flagged=True))

    def _boom(message_id):
        raise NotAuthenticated("token caducado")

    mailbox.get_message_attachments = _boom
    with pytest.raises(NotAuthenticated):
        list(MessageFetcher(mailbox).fetch("inbox", limit=10))


def test_stop_event_halts_before_next_page(make_items):
    mailbox = FakeMailbox(make_items(120))
    stop = threading.Event()
    fetcher = MessageFetcher(mailbox, batch_size=50, stop_event=stop)

    pages = fetcher.iter_pages(fetcher.plan("inbox", limit=1000))
    first = next(pages)
    stop.set()

    assert len(first) == 50
    with pytest.raises(FetchCancelled):
        next(pages)
    assert len(mailbox.page_calls) == 1


def test_stop_during_enrichment_drops_the_page(make_items):
    mailbox = FakeMailbox(make_items(3, flagged=True))
    stop = threading.Event()
    original = mailbox.get_message_attachments

    def _stop_then_fetch(message_id):
        stop.set()
        return original(message_id)

    mailbox.get_message_attachments = _stop_then_fetch
    fetcher = MessageFetcher(mailbox, batch_size=10, attachment_workers=1, stop_event=stop)

    with pytest.raises(FetchCancelled):
        list(fetcher.fetch("inbox", limit=10))


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        MessageFetcher(FakeMailbox([]), batch_size=0)


def test_transient_error_during_folder_lookup_is_retried(make_items):
    class Flaky(FakeMailbox):
        lookups = 0

        def resolve_folder_id(self, folder):
            self.lookups += 1
            if self.lookups == 1:
                raise TransientFetchError("503 carpetas", status_code=503)
            return super().resolve_folder_id(folder)

    mailbox = Flaky(make_items(3))
    fetcher = MessageFetcher(mailbox, retry=RetryPolicy(attempts=2, sleep=lambda s: None))

    plan = fetcher.plan("inbox", limit=10)

    assert plan.folder_id == "inbox"
    assert mailbox.lookups == 2
