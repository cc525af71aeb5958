from __future__ import annotations

from types import SimpleNamespace

from expose_controller.src.cache import EventType, ResourceEvent
from expose_controller.src.keys import DeletedFinalStateUnknown, ObjectKey
from expose_controller.src.notifier import ChangeNotifier
from expose_controller.src.workqueue import RateLimitingQueue


def make_deployment(namespace: str = "ns", name: str = "foo") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(namespace=namespace, name=name))


def _drain(queue: RateLimitingQueue) -> list[object]:
    keys = []
    while len(queue):
        key, _ = queue.get()
        keys.append(key)
        queue.done(key)
    return keys


def test_added_and_updated_events_enqueue_object_key() -> None:
    queue = RateLimitingQueue()
    notifier = ChangeNotifier(queue)

    added = notifier.handle(ResourceEvent(EventType.ADDED, make_deployment(name="foo")))
    updated = notifier.handle(
        ResourceEvent(
            EventType.UPDATED,
            make_deployment(name="bar"),
            old_obj=make_deployment(name="bar"),
        )
    )

    assert added == ObjectKey("ns", "foo")
    assert updated == ObjectKey("ns", "bar")
    assert _drain(queue) == [ObjectKey("ns", "foo"), ObjectKey("ns", "bar")]


def test_deleted_event_enqueues_key() -> None:
    queue = RateLimitingQueue()
    notifier = ChangeNotifier(queue)

    notifier.handle(ResourceEvent(EventType.DELETED, make_deployment(name="foo")))

    assert _drain(queue) == [ObjectKey("ns", "foo")]


def test_deleted_tombstone_still_yields_key() -> None:
    queue = RateLimitingQueue()
    notifier = ChangeNotifier(queue)
    tombstone = DeletedFinalStateUnknown(key=ObjectKey("ns", "gone"), obj=None)

    key = notifier.handle(ResourceEvent(EventType.DELETED, tombstone))

    assert key == ObjectKey("ns", "gone")
    assert _drain(queue) == [ObjectKey("ns", "gone")]


def test_tombstone_is_not_accepted_for_updates() -> None:
    queue = RateLimitingQueue()
    notifier = ChangeNotifier(queue)
    tombstone = DeletedFinalStateUnknown(key=ObjectKey("ns", "gone"), obj=None)

    assert notifier.handle(ResourceEvent(EventType.UPDATED, tombstone)) is None
    assert len(queue) == 0


def test_object_without_name_is_dropped() -> None:
    queue = RateLimitingQueue()
    notifier = ChangeNotifier(queue)

    result = notifier.handle(
        ResourceEvent(EventType.ADDED, SimpleNamespace(metadata=SimpleNamespace(name=None)))
    )

    assert result is None
    assert len(queue) == 0


def test_duplicate_notifications_collapse_in_queue() -> None:
    queue = RateLimitingQueue()
    notifier = ChangeNotifier(queue)
    deployment = make_deployment(name="foo")

    notifier.handle(ResourceEvent(EventType.ADDED, deployment))
    notifier.handle(ResourceEvent(EventType.UPDATED, deployment, old_obj=deployment))
    notifier.handle(ResourceEvent(EventType.DELETED, deployment))

    assert _drain(queue) == [ObjectKey("ns", "foo")]
