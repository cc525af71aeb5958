from __future__ import annotations

import logging

from expose_controller.src.cache import EventType, ResourceEvent
from expose_controller.src.keys import InvalidKeyError, ObjectKey, deletion_key
from expose_controller.src.workqueue import RateLimitingQueue


class ChangeNotifier:
    """Turns Deployment change notifications into work queue keys.

    Only the key is enqueued; the worker re-reads current state from the
    cache, so event payloads are never replayed.
    """

    def __init__(self, queue: RateLimitingQueue, logger: logging.Logger | None = None) -> None:
        self.queue = queue
        self.logger = logger or logging.getLogger(__name__)

    def handle(self, event: ResourceEvent) -> ObjectKey | None:
        try:
            if event.type is EventType.DELETED:
                key = deletion_key(event.obj)
            else:
                key = ObjectKey.from_object(event.obj)
        except InvalidKeyError as exc:
            self.logger.error("Error creating key for %s event: %s", event.type.value, exc)
            return None

        self.logger.info("%s event for key: %s", event.type.value.capitalize(), key)
        self.queue.add(key)
        return key
