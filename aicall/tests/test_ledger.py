import hashlib
import threading

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from aicall.digest import ZERO_DIGEST, to_hex
from aicall.errors import (AlreadyFulfilled, EmptyDigest, InvalidId,
                           NotAuthorized, PreconditionError, UnknownModel,
                           UnsupportedModel, ZeroAddress)
from aicall.ledger import (AdminChanged, Fulfilled, FulfillmentAuthorityChanged,
                           ModelAdded, ModelRemoved, RequestLedger,
                           RequestRecord, Requested, RequestStatus)

from .conftest import ADMIN, FULFILLER, USER


def _d(tag: str) -> bytes:
    return hashlib.sha256(tag.encode()).digest()


def test_rejects_empty_authorities():
    with pytest.raises(ZeroAddress):
        RequestLedger(admin="", fulfillment_authority=FULFILLER)
    with pytest.raises(ZeroAddress):
        RequestLedger(admin=ADMIN, fulfillment_authority="  ")


def test_submit_allocates_increasing_ids_and_emits_requested(ledger):
    out1 = ledger.submit(USER, "COA", _d("p1"))
    out2 = ledger.submit(USER, "COA", to_hex(_d("p2")))

    assert out1.request_id == 1
    assert out2.request_id == 2
    assert ledger.next_id == 3
    assert ledger.request_count == 2

    (ev,) = out1.events
    assert isinstance(ev, Requested)
    assert (ev.id, ev.requester, ev.model, ev.prompt_digest) == (1, USER, "COA", _d("p1"))

    rec = ledger.get(2)
    assert rec.prompt_digest == _d("p2")
    assert rec.result_digest == ZERO_DIGEST
    assert rec.status is RequestStatus.PENDING


def test_submit_rejections_leave_no_trace(ledger):
    with pytest.raises(UnsupportedModel):
        ledger.submit(USER, "GPT-9", _d("p"))
    with pytest.raises(EmptyDigest):
        ledger.submit(USER, "COA", ZERO_DIGEST)
    with pytest.raises(PreconditionError):
        ledger.submit(USER, "COA", "0x1234")
    with pytest.raises(ZeroAddress):
        ledger.submit("", "COA", _d("p"))

    assert ledger.next_id == 1
    assert ledger.events() == []
    assert ledger.get(1) is None


def test_fulfill_happy_path(ledger):
    rid = ledger.submit(USER, "COA", _d("p")).request_id
    out = ledger.fulfill(FULFILLER, rid, _d("result"), _d("report"))

    (ev,) = out.events
    assert isinstance(ev, Fulfilled)
    assert ev.result_digest == _d("result")

    rec = ledger.get(rid)
    assert rec.status is RequestStatus.FULFILLED
    assert rec.is_fulfilled
    assert rec.report_digest == _d("report")


def test_fulfill_exactly_once(ledger):
    rid = ledger.submit(USER, "COA", _d("p")).request_id
    ledger.fulfill(FULFILLER, rid, _d("r1"), _d("a1"))
    with pytest.raises(AlreadyFulfilled):
        ledger.fulfill(FULFILLER, rid, _d("r2"), _d("a2"))
    assert ledger.get(rid).result_digest == _d("r1")


def test_fulfill_preconditions(ledger):
    rid = ledger.submit(USER, "COA", _d("p")).request_id

    with pytest.raises(NotAuthorized):
        ledger.fulfill(USER, rid, _d("r"), _d("a"))
    with pytest.raises(InvalidId):
        ledger.fulfill(FULFILLER, 99, _d("r"), _d("a"))
    with pytest.raises(EmptyDigest):
        ledger.fulfill(FULFILLER, rid, ZERO_DIGEST, _d("a"))
    with pytest.raises(EmptyDigest):
        ledger.fulfill(FULFILLER, rid, _d("r"), ZERO_DIGEST)

    assert ledger.get(rid).status is RequestStatus.PENDING
    assert [type(e) for e in ledger.events()] == [Requested]


def test_whitelisting_then_resubmitting_yields_larger_id(ledger):
    ledger.submit(USER, "COA", _d("first"))
    with pytest.raises(UnsupportedModel):
        ledger.submit(USER, "GPT", _d("p"))

    ledger.add_model(ADMIN, "GPT")
    ledger.add_model(ADMIN, "GPT")
    assert ledger.list_models().count("GPT") == 1
    assert ledger.submit(USER, "GPT", _d("p")).request_id == 2


def test_request_survives_model_removal(ledger):
    rid = ledger.submit(USER, "COA", _d("p")).request_id
    ledger.remove_model(ADMIN, "COA")
    assert not ledger.is_model_supported("COA")

    ledger.fulfill(FULFILLER, rid, _d("r"), _d("a"))
    assert ledger.get(rid).is_fulfilled
    with pytest.raises(UnsupportedModel):
        ledger.submit(USER, "COA", _d("p2"))


def test_model_admin(ledger):
    out = ledger.add_models(ADMIN, ["GPT", "COA", "LLAMA"])
    # COA was already whitelisted: no event for it
    assert [e.name for e in out.events] == ["GPT", "LLAMA"]
    assert all(isinstance(e, ModelAdded) for e in out.events)
    assert set(ledger.list_models()) == {"COA", "GPT", "LLAMA"}

    assert ledger.add_model(ADMIN, "GPT").events == []

    with pytest.raises(NotAuthorized):
        ledger.add_model(USER, "X")
    with pytest.raises(PreconditionError):
        ledger.add_models(ADMIN, ["ok", ""])
    assert not ledger.is_model_supported("ok")


def test_batch_remove_is_all_or_nothing(ledger):
    ledger.add_models(ADMIN, ["GPT", "LLAMA"])
    with pytest.raises(UnknownModel):
        ledger.remove_models(ADMIN, ["GPT", "missing"])
    assert set(ledger.list_models()) == {"COA", "GPT", "LLAMA"}

    out = ledger.remove_models(ADMIN, ["GPT", "LLAMA"])
    assert [type(e) for e in out.events] == [ModelRemoved, ModelRemoved]
    assert ledger.list_models() == ["COA"]

    with pytest.raises(UnknownModel):
        ledger.remove_model(ADMIN, "GPT")


def test_authority_changes(ledger):
    new_fulfiller = "0xNEWF"
    out = ledger.set_fulfillment_authority(ADMIN, new_fulfiller)
    (ev,) = out.events
    assert isinstance(ev, FulfillmentAuthorityChanged)
    assert (ev.previous, ev.new) == (FULFILLER, new_fulfiller)

    rid = ledger.submit(USER, "COA", _d("p")).request_id
    with pytest.raises(NotAuthorized):
        ledger.fulfill(FULFILLER, rid, _d("r"), _d("a"))
    ledger.fulfill(new_fulfiller, rid, _d("r"), _d("a"))

    with pytest.raises(ZeroAddress):
        ledger.set_fulfillment_authority(ADMIN, "")
    with pytest.raises(NotAuthorized):
        ledger.set_fulfillment_authority(USER, "0xother")

    out = ledger.transfer_admin(ADMIN, "0xNEWADMIN")
    assert isinstance(out.events[0], AdminChanged)
    assert ledger.admin == "0xNEWADMIN"
    with pytest.raises(NotAuthorized):
        ledger.add_model(ADMIN, "X")
    with pytest.raises(ZeroAddress):
        ledger.transfer_admin("0xNEWADMIN", "")


def test_event_log_and_subscribers(ledger):
    seen = []
    unsubscribe = ledger.subscribe(seen.append)

    ledger.add_model(ADMIN, "GPT")
    rid = ledger.submit(USER, "GPT", _d("p")).request_id
    ledger.fulfill(FULFILLER, rid, _d("r"), _d("a"))

    evs = ledger.events()
    assert [e.seq for e in evs] == [1, 2, 3]
    assert [e.kind for e in evs] == ["ModelAdded", "Requested", "Fulfilled"]
    assert seen == evs
    assert [e.seq for e in ledger.events(since=2)] == [3]

    unsubscribe()
    ledger.add_model(ADMIN, "LLAMA")
    assert len(seen) == 3


def test_failing_subscriber_does_not_break_writes(ledger):
    def boom(_ev):
        raise RuntimeError("subscriber bug")

    ledger.subscribe(boom)
    assert ledger.submit(USER, "COA", _d("p")).request_id == 1
    assert ledger.get(1) is not None


def test_record_dict_round_trip(ledger):
    rid = ledger.submit(USER, "COA", _d("p")).request_id
    ledger.fulfill(FULFILLER, rid, _d("r"), _d("a"))
    d = ledger.get(rid).to_dict()
    assert d["status"] == "fulfilled"
    assert d["prompt_digest"] == to_hex(_d("p"))
    assert RequestRecord.from_dict(d) == ledger.get(rid)


def test_concurrent_submits_get_unique_ids(ledger):
    ids = []
    lock = threading.Lock()

    def worker(n: int) -> None:
        for i in range(25):
            rid = ledger.submit(f"0xuser{n}", "COA", _d(f"{n}-{i}")).request_id
            with lock:
                ids.append(rid)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(ids) == list(range(1, 201))
    assert ledger.next_id == 201


_op = st.one_of(
    st.tuples(st.just("submit"), st.sampled_from(["COA", "GPT", "nope"]), st.booleans()),
    st.tuples(st.just("fulfill"), st.integers(min_value=0, max_value=30), st.booleans()),
    st.tuples(st.just("add"), st.sampled_from(["GPT", "COA"]), st.booleans()),
    st.tuples(st.just("remove"), st.sampled_from(["GPT", "COA"]), st.booleans()),
)


@settings(max_examples=60, deadline=None)
@given(st.lists(_op, max_size=40))
def test_ids_strictly_increase_and_fulfillment_never_reverts(ops):
    ledger = RequestLedger(admin=ADMIN, fulfillment_authority=FULFILLER, models=["COA"])
    allocated = []
    fulfilled = {}

    for i, (kind, arg, flag) in enumerate(ops):
        try:
            if kind == "submit":
                digest = ZERO_DIGEST if flag and i % 5 == 0 else _d(f"p{i}")
                allocated.append(ledger.submit(USER, arg, digest).request_id)
            elif kind == "fulfill":
                ledger.fulfill(FULFILLER if flag else USER, arg, _d(f"r{i}"), _d(f"a{i}"))
                fulfilled[arg] = _d(f"r{i}")
            elif kind == "add":
                ledger.add_model(ADMIN, arg)
            else:
                ledger.remove_model(ADMIN, arg)
        except (PreconditionError, UnsupportedModel, UnknownModel, InvalidId, AlreadyFulfilled, NotAuthorized):
            pass

        # ids are 1..n with no gaps or reuse
        assert allocated == list(range(1, len(allocated) + 1))
        assert ledger.next_id == len(allocated) + 1
        # a fulfilled record keeps its first result forever
        for rid, res in fulfilled.items():
            assert ledger.get(rid).result_digest == res
