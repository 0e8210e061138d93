import pytest

from nanoflow.channel import Flow, value
from nanoflow.exceptions import ChannelError


def test_map_filter_preserve_order():
    flow = Flow()
    out = flow.of(1, 2, 3, 4, 5).map(lambda x: x * 10).filter(lambda x: x != 30)
    flow.pump()
    assert out.closed
    assert out.items == [10, 20, 40, 50]


def test_join_by_barcode_drops_unmatched(capsys):
    flow = Flow()
    fastqs = flow.of(("barcode01", "bc01.fastq.gz"), ("barcode03", "bc03.fastq.gz"))
    samples = flow.of(("barcode01", "S1"), ("barcode02", "S2"))
    joined = fastqs.join(samples, key=lambda x: x[0])
    flow.pump()
    assert joined.closed
    assert joined.items == [(("barcode01", "bc01.fastq.gz"), ("barcode01", "S1"))]
    assert "unmatched" in capsys.readouterr().err


def test_join_zero_matches_is_a_warning(capsys):
    flow = Flow()
    joined = flow.of("a", "b").join(flow.of("c"), key=lambda x: x)
    flow.pump()
    assert joined.closed and joined.items == []
    assert "no keys matched" in capsys.readouterr().err


def test_join_waits_for_late_partner():
    flow = Flow()
    left = flow.channel("left")
    right = flow.channel("right")
    joined = left.join(right, key=lambda x: x[0], other_key=lambda x: x[0])
    right.emit(("k2", "r2"))
    left.emit(("k1", "l1"))
    flow.pump()
    assert joined.items == []
    right.emit(("k1", "r1"))
    left.emit(("k2", "l2"))
    right.close(); left.close()
    flow.pump()
    assert sorted(joined.items) == [(("k1", "l1"), ("k1", "r1")), (("k2", "l2"), ("k2", "r2"))]
    assert joined.closed


def test_cross_broadcasts_for_any_interleaving():
    flow = Flow()
    refs = flow.channel("refs")
    reads = flow.channel("reads")
    crossed = refs.cross(reads, key=lambda r: r[0])
    # reads arrive before the reference bundle is built
    reads.emit(("refA", "S1")); reads.emit(("refA", "S2")); reads.emit(("refB", "S3"))
    flow.pump()
    assert crossed.items == []
    refs.emit(("refA", "idxA"))
    refs.close(); reads.close()
    flow.pump()
    assert crossed.items == [(("refA", "idxA"), ("refA", "S1")), (("refA", "idxA"), ("refA", "S2"))]
    assert crossed.closed


def test_unique_keeps_first_by_key():
    flow = Flow()
    out = flow.of(("refA", 1), ("refB", 2), ("refA", 3)).unique(key=lambda x: x[0])
    flow.pump()
    assert out.items == [("refA", 1), ("refB", 2)]


def test_flatten_and_flat_map():
    flow = Flow()
    flat = flow.of(("a", "b"), [("c",), "d"], "e").flatten()
    fm = flow.of(2, 3).flat_map(lambda n: [n] * n)
    flow.pump()
    assert flat.items == ["a", "b", "c", "d", "e"]
    assert fm.items == [2, 2, 3, 3, 3]


def test_collate():
    flow = Flow()
    with_rest = flow.of(1, 2, 3, 4, 5).collate(2)
    no_rest = flow.of(1, 2, 3, 4, 5).collate(2, remainder=False)
    flow.pump()
    assert with_rest.items == [(1, 2), (3, 4), (5,)]
    assert no_rest.items == [(1, 2), (3, 4)]


def test_collect_waits_for_close_and_skips_empty():
    flow = Flow()
    ch = flow.channel("versions")
    collected = ch.collect()
    ch.emit("a")
    flow.pump()
    assert collected.items == [] and not collected.closed
    ch.emit("b"); ch.close()
    flow.pump()
    assert value(collected) == ["a", "b"]

    empty = flow.empty().collect()
    flow.pump()
    assert empty.closed and empty.items == []


def test_if_empty_supplies_default():
    flow = Flow()
    gap = flow.empty().collect().if_empty([])
    full = flow.of(1).collect().if_empty([])
    lazy = flow.empty().if_empty(lambda: "made")
    flow.pump()
    assert value(gap) == []
    assert value(full) == [1]
    assert value(lazy) == "made"


def test_count_first_mix():
    flow = Flow()
    n = flow.of("x", "y", "z").count()
    first = flow.of(7, 8).first()
    mixed = flow.of(1, 2).mix(flow.of(3), flow.empty())
    flow.pump()
    assert value(n) == 3
    assert value(first) == 7
    assert sorted(mixed.items) == [1, 2, 3] and mixed.closed


def test_split_broadcasts_and_single_consumer_rule():
    flow = Flow()
    src = flow.of(1, 2)
    a, b, c = src.split(3)
    flow.pump()
    assert a.items == b.items == c.items == [1, 2]
    with pytest.raises(ChannelError, match="already consumed"):
        src.map(str)


def test_channel_misuse():
    flow = Flow()
    ch = flow.of(1)
    with pytest.raises(ChannelError):
        ch.emit(2)
    with pytest.raises(ChannelError):
        flow.of(1).split(0)
    with pytest.raises(ChannelError, match="still open"):
        value(flow.channel("open"))
