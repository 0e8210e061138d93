"""
Channels and channel operators.

A Channel is an ordered buffer of items with an explicit "closed" signal.
Each channel has exactly one consumer (an operator or a stage); fan a channel
out to several consumers with ``split(n)``. Operators hold their own buffered
state and are advanced by ``Flow.pump()``, which the scheduler calls whenever
new items may have arrived:

  - map / filter / unique / flatten / flat_map / collate : streaming, order-preserving
  - join / cross : keyed buffers drained on arrival from either side
  - mix : interleaves several channels, closes when all inputs are closed
  - collect / count / if_empty : resolve only once the upstream is closed
  - first : resolves on the first item
"""
from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Sequence

from .exceptions import ChannelError
from .log import log_warn


def _identity(x: Any) -> Any:
    return x


class Channel:
    def __init__(self, flow: "Flow", name: str = ""):
        self.flow = flow
        self.name = name or f"ch{len(flow.channels)}"
        self._items: List[Any] = []
        self._cursor = 0
        self._closed = False
        self.consumer: Optional[str] = None
        flow.channels.append(self)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Channel {self.name} n={len(self._items)} {state}>"

    def __len__(self) -> int:
        return len(self._items)

    # ---- producer side ----
    def emit(self, item: Any) -> None:
        if self._closed:
            raise ChannelError(f"emit on closed channel '{self.name}'")
        self._items.append(item)

    def emit_all(self, items) -> None:
        for it in items:
            self.emit(it)

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def items(self) -> List[Any]:
        """Snapshot of everything emitted so far (read-only view for inspection)."""
        return list(self._items)

    # ---- consumer side ----
    def claim(self, consumer: str) -> "Channel":
        if self.consumer is not None:
            raise ChannelError(
                f"channel '{self.name}' already consumed by '{self.consumer}'; "
                f"use split() to feed '{consumer}' too"
            )
        self.consumer = consumer
        return self

    def take(self) -> List[Any]:
        """Items not yet handed to the consumer."""
        new = self._items[self._cursor:]
        self._cursor = len(self._items)
        return new

    @property
    def pending(self) -> int:
        return len(self._items) - self._cursor

    @property
    def exhausted(self) -> bool:
        return self._closed and self.pending == 0

    # ---- operators ----
    def map(self, fn: Callable[[Any], Any], name: str = "") -> "Channel":
        return _Map(self.flow, [self], name or f"{self.name}.map", fn).out

    def filter(self, pred: Callable[[Any], bool], name: str = "") -> "Channel":
        return _Filter(self.flow, [self], name or f"{self.name}.filter", pred).out

    def unique(self, key: Callable[[Any], Hashable] = _identity, name: str = "") -> "Channel":
        return _Unique(self.flow, [self], name or f"{self.name}.unique", key).out

    def flatten(self, name: str = "") -> "Channel":
        return _Flatten(self.flow, [self], name or f"{self.name}.flatten").out

    def flat_map(self, fn: Callable[[Any], Sequence[Any]], name: str = "") -> "Channel":
        return _FlatMap(self.flow, [self], name or f"{self.name}.flat_map", fn).out

    def collate(self, size: int, remainder: bool = True, name: str = "") -> "Channel":
        return _Collate(self.flow, [self], name or f"{self.name}.collate", size, remainder).out

    def join(self, other: "Channel", key: Callable[[Any], Hashable],
             other_key: Optional[Callable[[Any], Hashable]] = None, name: str = "") -> "Channel":
        return _Join(self.flow, [self, other], name or f"{self.name}.join", key, other_key or key).out

    def cross(self, other: "Channel", key: Callable[[Any], Hashable],
              other_key: Optional[Callable[[Any], Hashable]] = None, name: str = "") -> "Channel":
        return _Cross(self.flow, [self, other], name or f"{self.name}.cross", key, other_key or key).out

    def mix(self, *others: "Channel", name: str = "") -> "Channel":
        return _Mix(self.flow, [self, *others], name or f"{self.name}.mix").out

    def collect(self, name: str = "") -> "Channel":
        return _Collect(self.flow, [self], name or f"{self.name}.collect").out

    def count(self, name: str = "") -> "Channel":
        return _Count(self.flow, [self], name or f"{self.name}.count").out

    def first(self, name: str = "") -> "Channel":
        return _First(self.flow, [self], name or f"{self.name}.first").out

    def if_empty(self, default: Any, name: str = "") -> "Channel":
        return _IfEmpty(self.flow, [self], name or f"{self.name}.if_empty", default).out

    def split(self, n: int, name: str = "") -> List["Channel"]:
        return _Split(self.flow, [self], name or f"{self.name}.split", n).outs


class Flow:
    """Registry of channels and operators; pumps operators to quiescence."""

    def __init__(self):
        self.channels: List[Channel] = []
        self.operators: List["_Op"] = []

    def channel(self, name: str = "") -> Channel:
        return Channel(self, name)

    def of(self, *items: Any, name: str = "") -> Channel:
        ch = Channel(self, name)
        ch.emit_all(items)
        ch.close()
        return ch

    def from_list(self, items, name: str = "") -> Channel:
        return self.of(*list(items), name=name)

    def empty(self, name: str = "") -> Channel:
        ch = Channel(self, name)
        ch.close()
        return ch

    def pump(self) -> bool:
        """Advance every operator until none makes progress. True if anything moved."""
        moved_any = False
        while True:
            moved = False
            for op in self.operators:
                if op.pump():
                    moved = True
            if not moved:
                return moved_any
            moved_any = True

    run = pump

    def dangling(self) -> List[Channel]:
        """Open channels that nobody will ever close (useful for deadlock diagnostics)."""
        return [c for c in self.channels if not c.closed]


# --------------------------------------------------------------------
# Operators
# --------------------------------------------------------------------
class _Op:
    n_outputs = 1

    def __init__(self, flow: Flow, inputs: List[Channel], name: str):
        self.flow = flow
        self.name = name
        self.inputs = [ch.claim(name) for ch in inputs]
        self.outs = [Channel(flow, name if self.n_outputs == 1 else f"{name}[{i}]")
                     for i in range(self.n_outputs)]
        self.finished = False
        flow.operators.append(self)

    @property
    def out(self) -> Channel:
        return self.outs[0]

    def _emit(self, item: Any) -> None:
        for o in self.outs:
            o.emit(item)

    def on_item(self, idx: int, item: Any) -> None:
        raise NotImplementedError

    def on_close(self) -> None:
        pass

    def pump(self) -> bool:
        moved = False
        for idx, ch in enumerate(self.inputs):
            for item in ch.take():
                moved = True
                if not self.finished:
                    self.on_item(idx, item)
        if not self.finished and all(ch.exhausted for ch in self.inputs):
            self.on_close()
            self.finish()
            moved = True
        return moved

    def finish(self) -> None:
        self.finished = True
        for o in self.outs:
            if not o.closed:
                o.close()


class _Map(_Op):
    def __init__(self, flow, inputs, name, fn):
        super().__init__(flow, inputs, name)
        self.fn = fn

    def on_item(self, idx, item):
        self._emit(self.fn(item))


class _Filter(_Op):
    def __init__(self, flow, inputs, name, pred):
        super().__init__(flow, inputs, name)
        self.pred = pred

    def on_item(self, idx, item):
        if self.pred(item):
            self._emit(item)


class _Unique(_Op):
    def __init__(self, flow, inputs, name, key):
        super().__init__(flow, inputs, name)
        self.key = key
        self.seen: set = set()

    def on_item(self, idx, item):
        k = self.key(item)
        if k not in self.seen:
            self.seen.add(k)
            self._emit(item)


def _flat(item: Any):
    if isinstance(item, (list, tuple)):
        for x in item:
            yield from _flat(x)
    else:
        yield item


class _Flatten(_Op):
    def on_item(self, idx, item):
        for x in _flat(item):
            self._emit(x)


class _FlatMap(_Op):
    def __init__(self, flow, inputs, name, fn):
        super().__init__(flow, inputs, name)
        self.fn = fn

    def on_item(self, idx, item):
        for x in self.fn(item):
            self._emit(x)


class _Collate(_Op):
    def __init__(self, flow, inputs, name, size, remainder):
        if size < 1:
            raise ChannelError(f"collate size must be >= 1, got {size}")
        super().__init__(flow, inputs, name)
        self.size = size
        self.remainder = remainder
        self.buf: List[Any] = []

    def on_item(self, idx, item):
        self.buf.append(item)
        if len(self.buf) == self.size:
            self._emit(tuple(self.buf))
            self.buf = []

    def on_close(self):
        if self.buf and self.remainder:
            self._emit(tuple(self.buf))
        self.buf = []


class _Join(_Op):
    """Inner join: each left item pairs with the first unmatched right item of the same key."""

    def __init__(self, flow, inputs, name, key, other_key):
        super().__init__(flow, inputs, name)
        self.keys = (key, other_key)
        self.waiting: tuple = (defaultdict(deque), defaultdict(deque))
        self.matched = 0

    def on_item(self, idx, item):
        k = self.keys[idx](item)
        other = self.waiting[1 - idx]
        if other[k]:
            mate = other[k].popleft()
            self.matched += 1
            self._emit((item, mate) if idx == 0 else (mate, item))
        else:
            self.waiting[idx][k].append(item)

    def unmatched(self, side: int) -> List[Any]:
        return [x for q in self.waiting[side].values() for x in q]

    def on_close(self):
        left, right = self.unmatched(0), self.unmatched(1)
        if self.matched == 0 and (left or right):
            log_warn(f"[join] {self.name}: no keys matched "
                     f"({len(left)} left / {len(right)} right items dropped)")
        elif left or right:
            log_warn(f"[join] {self.name}: dropped {len(left)} unmatched left and "
                     f"{len(right)} unmatched right items")


class _Cross(_Op):
    """Broadcast join: every left item pairs with every right item sharing its key."""

    def __init__(self, flow, inputs, name, key, other_key):
        super().__init__(flow, inputs, name)
        self.keys = (key, other_key)
        self.seen: tuple = (defaultdict(list), defaultdict(list))

    def on_item(self, idx, item):
        k = self.keys[idx](item)
        for mate in self.seen[1 - idx][k]:
            self._emit((item, mate) if idx == 0 else (mate, item))
        self.seen[idx][k].append(item)


class _Mix(_Op):
    def on_item(self, idx, item):
        self._emit(item)


class _Collect(_Op):
    """Emits one list of all items once upstream closes; emits nothing if upstream was empty."""

    def __init__(self, flow, inputs, name):
        super().__init__(flow, inputs, name)
        self.buf: List[Any] = []

    def on_item(self, idx, item):
        self.buf.append(item)

    def on_close(self):
        if self.buf:
            self._emit(list(self.buf))


class _Count(_Op):
    def __init__(self, flow, inputs, name):
        super().__init__(flow, inputs, name)
        self.n = 0

    def on_item(self, idx, item):
        self.n += 1

    def on_close(self):
        self._emit(self.n)


class _First(_Op):
    def on_item(self, idx, item):
        self._emit(item)
        self.finish()


class _IfEmpty(_Op):
    def __init__(self, flow, inputs, name, default):
        super().__init__(flow, inputs, name)
        self.default = default
        self.any = False

    def on_item(self, idx, item):
        self.any = True
        self._emit(item)

    def on_close(self):
        if not self.any:
            d = self.default
            self._emit(d() if callable(d) else d)


class _Split(_Op):
    def __init__(self, flow, inputs, name, n):
        if n < 1:
            raise ChannelError(f"split count must be >= 1, got {n}")
        self.n_outputs = n
        super().__init__(flow, inputs, name)

    def on_item(self, idx, item):
        self._emit(item)


def value(ch: Channel, default: Any = None) -> Any:
    """First item of a closed value channel (collect/first/count output)."""
    if not ch.closed:
        raise ChannelError(f"channel '{ch.name}' is still open")
    items = ch.items
    return items[0] if items else default
