"""
Call Graph — Programmable Transaction Builder
==============================================

Builds a Sui programmable transaction (a "call graph" of Move calls) and
serializes it as a BCS TransactionKind for dev-inspect.

Layout (sui-types):
  TransactionKind::ProgrammableTransaction   variant 0
  ProgrammableTransaction { inputs: vector<CallArg>, commands: vector<Command> }
  CallArg::Pure(vector<u8>)                  variant 0
  CallArg::Object(ObjectArg)                 variant 1
  ObjectArg::SharedObject { id, initial_shared_version: u64, mutable: bool }  variant 1
  Command::MoveCall(ProgrammableMoveCall)    variant 0
  ProgrammableMoveCall { package, module, function, type_arguments, arguments }
  Argument: GasCoin 0 | Input(u16) 1 | Result(u16) 2 | NestedResult(u16, u16) 3

Ref: https://docs.sui.io/concepts/transactions/prog-txn-blocks
"""

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from margin_yield.central_config import CLOCK_INITIAL_SHARED_VERSION, CLOCK_OBJECT_ID
from margin_yield.rpc_helpers import (
    encode_address,
    encode_bool,
    encode_bytes,
    encode_string,
    encode_type_tag,
    encode_u16,
    encode_u64,
    encode_uleb128,
    encode_vector,
    normalize_sui_address,
)

_KIND_PROGRAMMABLE = 0
_CALL_ARG_PURE = 0
_CALL_ARG_OBJECT = 1
_OBJECT_ARG_SHARED = 1
_COMMAND_MOVE_CALL = 0

_ARG_INPUT = 1
_ARG_RESULT = 2
_ARG_NESTED_RESULT = 3


@dataclass(frozen=True)
class Argument:
    """Reference to a transaction input or to an earlier command's result."""

    kind: int
    index: int
    nested: int = 0

    def to_bcs(self) -> bytes:
        out = encode_uleb128(self.kind) + encode_u16(self.index)
        if self.kind == _ARG_NESTED_RESULT:
            out += encode_u16(self.nested)
        return out


@dataclass
class CallGraph:
    """
    Accumulates inputs and Move calls for one simulated round-trip.

    Usage:
        graph = CallGraph()
        pool = graph.shared_object(pool_id, version)
        graph.move_call(f"{pkg}::margin_pool::user_supply_amount",
                        [pool, graph.pure_id(cap_id), graph.clock()],
                        ["0x2::sui::SUI"])
        tx_kind = graph.to_bcs()
    """

    inputs: List[bytes] = field(default_factory=list)
    commands: List[bytes] = field(default_factory=list)
    _shared: dict = field(default_factory=dict)

    # ── Inputs ────────────────────────────────────────────────────────

    def pure(self, value: bytes) -> Argument:
        """Add a pure (BCS-encoded) input."""
        self.inputs.append(
            encode_uleb128(_CALL_ARG_PURE) + encode_bytes(value)
        )
        return Argument(_ARG_INPUT, len(self.inputs) - 1)

    def pure_id(self, object_id: str) -> Argument:
        """Add an object ID as a pure input (Move type `ID`)."""
        return self.pure(encode_address(object_id))

    def shared_object(
        self, object_id: str, initial_shared_version: int, mutable: bool = False
    ) -> Argument:
        """Add a shared object input. Repeated objects reuse one input slot."""
        key = normalize_sui_address(object_id)
        if key in self._shared:
            return self._shared[key]
        self.inputs.append(
            encode_uleb128(_CALL_ARG_OBJECT)
            + encode_uleb128(_OBJECT_ARG_SHARED)
            + encode_address(key)
            + encode_u64(initial_shared_version)
            + encode_bool(mutable)
        )
        arg = Argument(_ARG_INPUT, len(self.inputs) - 1)
        self._shared[key] = arg
        return arg

    def clock(self) -> Argument:
        """The system Clock (0x6), read-only."""
        return self.shared_object(CLOCK_OBJECT_ID, CLOCK_INITIAL_SHARED_VERSION)

    # ── Commands ──────────────────────────────────────────────────────

    def move_call(
        self,
        target: str,
        arguments: Sequence[Argument],
        type_arguments: Sequence[str] = (),
    ) -> Argument:
        """
        Append a Move call `package::module::function`.

        Returns:
            Argument referring to this call's result (usable by later calls).
        """
        package, module, function = _split_target(target)
        self.commands.append(
            encode_uleb128(_COMMAND_MOVE_CALL)
            + encode_address(package)
            + encode_string(module)
            + encode_string(function)
            + encode_vector([encode_type_tag(t) for t in type_arguments])
            + encode_vector([a.to_bcs() for a in arguments])
        )
        return Argument(_ARG_RESULT, len(self.commands) - 1)

    def __len__(self) -> int:
        return len(self.commands)

    def to_bcs(self) -> bytes:
        """Serialize as TransactionKind::ProgrammableTransaction."""
        if not self.commands:
            raise ValueError("Call graph has no commands")
        return (
            encode_uleb128(_KIND_PROGRAMMABLE)
            + encode_vector(self.inputs)
            + encode_vector(self.commands)
        )


def _split_target(target: str) -> Tuple[str, str, str]:
    parts = target.split("::")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid Move call target: {target}")
    return parts[0], parts[1], parts[2]
