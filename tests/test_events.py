import json

import redis

from src.codecanvas.infrastructure import events


class FakeRedis:
    def __init__(self, fail_publish=False):
        self.published = []
        self.fail_publish = fail_publish

    def ping(self):
        return True

    def publish(self, channel, message):
        if self.fail_publish:
            raise redis.ConnectionError("gone")
        self.published.append((channel, json.loads(message)))


def test_publishes_to_typed_channel(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(events.redis.Redis, "from_url", classmethod(lambda cls, url, **kw: fake))
    publisher = events.EventPublisher("redis://example:6379/0")
    assert publisher.publish("artifact", {"id": "abc"})
    assert fake.published == [("codecanvas.stream.artifact", {"id": "abc"})]


def test_publish_failure_is_reported_not_raised(monkeypatch):
    fake = FakeRedis(fail_publish=True)
    monkeypatch.setattr(events.redis.Redis, "from_url", classmethod(lambda cls, url, **kw: fake))
    publisher = events.EventPublisher("redis://example:6379/0")
    assert publisher.publish("chunk", {"content": "x"}) is False


def test_get_publisher_without_url_is_none():
    events.reset_publisher()
    assert events.get_publisher(None) is None
