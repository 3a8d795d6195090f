import threading

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from capture_controller_informer import (
    DeletedFinalStateUnknown,
    PodInformer,
    meta_namespace_key,
    split_meta_namespace_key,
)
from helpers import make_pod


class FakeV1:
    def __init__(self, *lists):
        self.lists = list(lists)
        self.list_calls = []

    def list_pod_for_all_namespaces(self, **kwargs):
        self.list_calls.append(kwargs)
        items = self.lists.pop(0) if len(self.lists) > 1 else self.lists[0]
        return client.V1PodList(items=items,
                                metadata=client.V1ListMeta(resource_version=str(len(self.list_calls))))


class FakeWatch:
    """Each stream() call plays the next batch; an exception batch is raised."""

    def __init__(self, batches, stop_event):
        self.batches = batches
        self.stop_event = stop_event
        self.calls = []

    def __call__(self):
        return self

    def stream(self, func, **kwargs):
        self.calls.append(kwargs)
        if not self.batches:
            self.stop_event.set()
            return
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        for ev in batch:
            yield ev

    def stop(self):
        pass


class Recorder:
    def __init__(self, informer):
        self.events = []
        informer.add_event_handler(
            on_add=lambda p: self.events.append(("add", meta_namespace_key(p))),
            on_update=lambda o, n: self.events.append(("update", meta_namespace_key(n))),
            on_delete=lambda p: self.events.append(("delete", p)),
        )


@pytest.mark.unit
def test_keys_round_trip():
    assert meta_namespace_key(make_pod(name="web", namespace="shop")) == "shop/web"
    assert split_meta_namespace_key("shop/web") == ("shop", "web")
    assert split_meta_namespace_key("node-1") == ("", "node-1")
    with pytest.raises(ValueError):
        split_meta_namespace_key("a/b/c")


@pytest.mark.unit
def test_replace_populates_cache_and_marks_synced():
    informer = PodInformer(FakeV1([]), resync_period=0)
    rec = Recorder(informer)
    assert not informer.has_synced()

    informer.replace([make_pod(name="a"), make_pod(name="b")], "5")

    assert informer.has_synced()
    assert informer.list_keys() == ["default/a", "default/b"]
    assert rec.events == [("add", "default/a"), ("add", "default/b")]
    pod, exists = informer.get_by_key("default/a")
    assert exists and pod.metadata.name == "a"
    assert informer.get_by_key("default/zzz") == (None, False)


@pytest.mark.unit
def test_relist_emits_tombstones_for_vanished_pods():
    informer = PodInformer(FakeV1([]), resync_period=0)
    informer.replace([make_pod(name="a"), make_pod(name="gone")])
    rec = Recorder(informer)

    informer.replace([make_pod(name="a", resource_version="2")])

    deletes = [e[1] for e in rec.events if e[0] == "delete"]
    assert len(deletes) == 1
    assert isinstance(deletes[0], DeletedFinalStateUnknown)
    assert deletes[0].key == "default/gone"
    assert deletes[0].obj.metadata.name == "gone"
    assert ("update", "default/a") in rec.events


@pytest.mark.unit
def test_watch_events_update_cache():
    informer = PodInformer(FakeV1([]), resync_period=0)
    rec = Recorder(informer)
    informer._apply("ADDED", make_pod(name="a"))
    informer._apply("MODIFIED", make_pod(name="a", resource_version="2"))
    informer._apply("DELETED", make_pod(name="a", resource_version="3"))

    assert [e[0] for e in rec.events] == ["add", "update", "delete"]
    assert informer.list_keys() == []


@pytest.mark.unit
def test_crashing_handler_does_not_stop_delivery(caplog):
    informer = PodInformer(FakeV1([]), resync_period=0)

    def boom(pod):
        raise RuntimeError("handler bug")

    informer.add_event_handler(on_add=boom)
    rec = Recorder(informer)
    informer._apply("ADDED", make_pod(name="a"))

    assert rec.events == [("add", "default/a")]
    assert "handler crashed" in caplog.text


@pytest.mark.unit
def test_resync_redelivers_cached_pods_as_updates():
    informer = PodInformer(FakeV1([]), resync_period=0)
    informer.replace([make_pod(name="a")])
    seen = []
    informer.add_event_handler(on_update=lambda o, n: seen.append(o is n))
    informer.resync()
    assert seen == [True]


@pytest.mark.unit
def test_run_lists_then_watches_with_field_selector():
    stop = threading.Event()
    v1 = FakeV1([make_pod(name="a")])
    fake_watch = FakeWatch([[
        {"type": "ADDED", "object": make_pod(name="b", resource_version="7")},
        {"type": "BOOKMARK", "object": make_pod(name="", resource_version="8")},
    ]], stop)
    informer = PodInformer(v1, field_selector="spec.nodeName=node-1",
                           resync_period=0, watch_factory=fake_watch)

    informer.run(stop)

    assert v1.list_calls == [{"field_selector": "spec.nodeName=node-1"}]
    assert fake_watch.calls[0]["field_selector"] == "spec.nodeName=node-1"
    assert fake_watch.calls[0]["resource_version"] == "1"
    assert fake_watch.calls[1]["resource_version"] == "8"
    assert informer.list_keys() == ["default/a", "default/b"]


@pytest.mark.unit
def test_run_relists_after_gone():
    stop = threading.Event()
    v1 = FakeV1([make_pod(name="a")], [make_pod(name="b")])
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)
    informer = PodInformer(v1, resync_period=0, watch_factory=fake_watch)
    rec = Recorder(informer)

    informer.run(stop)

    assert len(v1.list_calls) == 2
    assert informer.list_keys() == ["default/b"]
    assert any(e[0] == "delete" and e[1].key == "default/a" for e in rec.events)


@pytest.mark.unit
def test_wait_for_cache_sync_gives_up_on_stop_or_timeout():
    informer = PodInformer(FakeV1([]), resync_period=0)
    stop = threading.Event()
    assert informer.wait_for_cache_sync(stop, timeout=0.05) is False
    stop.set()
    assert informer.wait_for_cache_sync(stop) is False

    informer.replace([])
    assert informer.wait_for_cache_sync(threading.Event()) is True
