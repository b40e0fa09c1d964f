"""
Sui JSON-RPC client for the ``minority_game`` Move package.

Transactions are built by the fullnode (``unsafe_moveCall``), signed locally
with the Ed25519 key and executed with ``sui_executeTransactionBlock``. Move
aborts are parsed into :class:`MoveAbort` once, here, so callers can match on
the numeric abort code instead of the error text.
"""

import base64
import hashlib
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import bech32
import requests
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives import serialization

log = logging.getLogger("minority_game.ledger")

SUI_PRIVATE_KEY_PREFIX = "suiprivkey"
ED25519_FLAG = 0x00
TRANSACTION_INTENT = bytes([0, 0, 0])

MOVE_ABORT = re.compile(
    r"MoveAbort\((?P<location>.*),\s*(?P<code>\d+)\)(?:\s+in command (?P<command>\d+))?",
    re.DOTALL,
)
MOVE_MODULE = re.compile(r'name:\s*Identifier\("(?P<module>[^"]+)"\)')
MOVE_FUNCTION = re.compile(r'function_name:\s*Some\("(?P<function>[^"]+)"\)')

NOT_FOUND_HINTS = ("Could not find the referenced transaction", "not found")

_signer_locks: Dict[str, threading.Lock] = {}
_signer_locks_guard = threading.Lock()


def signer_lock(address: str) -> threading.Lock:
    """One lock per signing address; submissions from one key never interleave."""
    with _signer_locks_guard:
        lock = _signer_locks.get(address)
        if lock is None:
            lock = _signer_locks[address] = threading.Lock()
        return lock


class LedgerError(Exception):
    """The ledger rejected a request."""


class LedgerUnavailable(LedgerError):
    """Network failure, RPC outage or finality timeout. Retryable."""


class MoveAbort(LedgerError):
    def __init__(self, code: int, module: Optional[str] = None,
                 function: Optional[str] = None, command: Optional[int] = None,
                 raw: str = ""):
        self.code = code
        self.module = module
        self.function = function
        self.command = command
        self.raw = raw
        where = "::".join(p for p in (module, function) if p) or "unknown"
        super().__init__(f"MoveAbort in {where} with code {code}")


def parse_move_abort(text: Optional[str]) -> Optional[MoveAbort]:
    if not text:
        return None
    match = MOVE_ABORT.search(text)
    if not match:
        return None
    location = match.group("location")
    module = MOVE_MODULE.search(location)
    function = MOVE_FUNCTION.search(location)
    command = match.group("command")
    return MoveAbort(
        code=int(match.group("code")),
        module=module.group("module") if module else None,
        function=function.group("function") if function else None,
        command=int(command) if command is not None else None,
        raw=text,
    )


def normalize_address(address: str) -> str:
    addr = address.strip().lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    return "0x" + addr.rjust(64, "0")


class Ed25519Signer:
    def __init__(self, private_key: Ed25519PrivateKey):
        self._key = private_key
        self.public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        digest = hashlib.blake2b(bytes([ED25519_FLAG]) + self.public_key, digest_size=32)
        self.address = "0x" + digest.hexdigest()

    @classmethod
    def from_secret(cls, secret: bytes) -> "Ed25519Signer":
        if len(secret) != 32:
            raise ValueError(f"Ed25519 secret must be 32 bytes, got {len(secret)}")
        return cls(Ed25519PrivateKey.from_private_bytes(secret))

    @classmethod
    def from_sui_private_key(cls, encoded: str) -> "Ed25519Signer":
        """Accepts ``suiprivkey1...`` (bech32) or base64 ``flag || secret``."""
        encoded = encoded.strip()
        if encoded.startswith(SUI_PRIVATE_KEY_PREFIX):
            hrp, data = bech32.bech32_decode(encoded)
            if hrp != SUI_PRIVATE_KEY_PREFIX or data is None:
                raise ValueError("Invalid suiprivkey encoding")
            raw = bytes(bech32.convertbits(data, 5, 8, False) or [])
        else:
            raw = base64.b64decode(encoded)
        if len(raw) == 33:
            if raw[0] != ED25519_FLAG:
                raise ValueError("Only ED25519 keys are supported")
            raw = raw[1:]
        return cls.from_secret(raw)

    def sign_transaction(self, tx_bytes: bytes) -> str:
        digest = hashlib.blake2b(TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
        signature = self._key.sign(digest)
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode("ascii")


@dataclass
class TransactionResult:
    digest: str
    status: str
    error: Optional[str] = None
    effects: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    object_changes: List[Dict[str, Any]] = field(default_factory=list)
    balance_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def abort(self) -> Optional[MoveAbort]:
        return parse_move_abort(self.error)

    def raise_for_status(self) -> None:
        if self.ok:
            return
        abort = self.abort
        if abort is not None:
            raise abort
        raise LedgerError(f"Transaction {self.digest} failed: {self.error}")

    def find_event(self, suffix: str) -> Optional[Dict[str, Any]]:
        for event in self.events:
            if str(event.get("type", "")).endswith(suffix):
                return event
        return None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TransactionResult":
        effects = data.get("effects") or {}
        status = effects.get("status") or {}
        return cls(
            digest=data.get("digest", ""),
            status=status.get("status", "unknown"),
            error=status.get("error"),
            effects=effects,
            events=data.get("events") or [],
            object_changes=data.get("objectChanges") or [],
            balance_changes=data.get("balanceChanges") or [],
        )


def transaction_sender(tx: Dict[str, Any]) -> Optional[str]:
    return ((tx.get("transaction") or {}).get("data") or {}).get("sender")


def transaction_succeeded(tx: Dict[str, Any]) -> bool:
    return ((tx.get("effects") or {}).get("status") or {}).get("status") == "success"


def received_amount(tx: Dict[str, Any], address: str) -> int:
    """Net positive SUI balance change credited to ``address``."""
    target = normalize_address(address)
    total = 0
    for change in tx.get("balanceChanges") or []:
        owner = change.get("owner")
        if not isinstance(owner, dict) or "AddressOwner" not in owner:
            continue
        if normalize_address(owner["AddressOwner"]) != target:
            continue
        if not str(change.get("coinType", "")).endswith("::sui::SUI"):
            continue
        try:
            amount = int(change.get("amount", 0))
        except (TypeError, ValueError):
            continue
        total += amount
    return max(total, 0)


class SuiLedgerClient:
    def __init__(
        self,
        rpc_url: str,
        package_id: str,
        module_name: str = "minority_game",
        signer: Optional[Ed25519Signer] = None,
        admin_cap_id: Optional[str] = None,
        clock_object_id: str = "0x6",
        gas_budget: int = 100_000_000,
        finality_attempts: int = 10,
        finality_interval: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 30,
    ):
        self.rpc_url = rpc_url
        self.package_id = package_id
        self.module_name = module_name
        self.signer = signer
        self.admin_cap_id = admin_cap_id
        self.clock_object_id = clock_object_id
        self.gas_budget = gas_budget
        self.finality_attempts = finality_attempts
        self.finality_interval = finality_interval
        self.session = session or requests.Session()
        self.sleep = sleep
        self.timeout = timeout
        self._ids = 0

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "SuiLedgerClient":
        signer = None
        if settings.admin_secret_key:
            signer = Ed25519Signer.from_sui_private_key(settings.admin_secret_key)
        return cls(
            rpc_url=settings.rpc_url,
            package_id=settings.package_id,
            module_name=settings.module_name,
            signer=signer,
            admin_cap_id=settings.admin_cap_id,
            clock_object_id=settings.clock_object_id,
            gas_budget=settings.gas_budget,
            finality_attempts=settings.finality_attempts,
            finality_interval=settings.finality_interval,
            **kwargs,
        )

    # --- JSON-RPC plumbing ---

    def _rpc(self, method: str, params: list) -> Any:
        self._ids += 1
        payload = {"jsonrpc": "2.0", "id": self._ids, "method": method, "params": params}
        try:
            r = self.session.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise LedgerUnavailable(f"Sui RPC failed: {e}")

        if r.status_code != 200:
            raise LedgerUnavailable(f"Sui RPC error {r.status_code}: {r.text}")

        try:
            data = r.json()
        except ValueError:
            raise LedgerUnavailable("Sui RPC returned invalid JSON")

        if "error" in data:
            error = data["error"]
            message = str(error.get("message", error) if isinstance(error, dict) else error)
            abort = parse_move_abort(message)
            if abort is not None:
                raise abort
            raise LedgerError(f"Sui RPC error in {method}: {message}")
        return data.get("result")

    def _target(self, function: str) -> str:
        return f"{self.package_id}::{self.module_name}::{function}"

    def move_call(self, function: str, arguments: list,
                  signer: Optional[Ed25519Signer] = None) -> TransactionResult:
        signer = signer or self.signer
        if signer is None:
            raise LedgerError("No signer configured")

        with signer_lock(signer.address):
            built = self._rpc(
                "unsafe_moveCall",
                [
                    signer.address,
                    self.package_id,
                    self.module_name,
                    function,
                    [],
                    arguments,
                    None,
                    str(self.gas_budget),
                    None,
                ],
            )
            tx_bytes = (built or {}).get("txBytes")
            if not tx_bytes:
                raise LedgerError(f"Fullnode returned no txBytes for {self._target(function)}")

            signature = signer.sign_transaction(base64.b64decode(tx_bytes))
            response = self._rpc(
                "sui_executeTransactionBlock",
                [
                    tx_bytes,
                    [signature],
                    {
                        "showEffects": True,
                        "showEvents": True,
                        "showObjectChanges": True,
                        "showBalanceChanges": True,
                    },
                    "WaitForLocalExecution",
                ],
            )

        result = TransactionResult.from_response(response or {})
        log.info("%s -> %s (%s)", self._target(function), result.digest, result.status)
        return result

    # --- Transactions ---

    def submit_reveal(self, poll_id: str, participant: str,
                      choice_bytes: bytes, salt_bytes: bytes) -> TransactionResult:
        if not self.admin_cap_id:
            raise LedgerError("AdminCap id not configured")
        return self.move_call(
            "reveal_vote",
            [
                self.admin_cap_id,
                poll_id,
                participant,
                list(choice_bytes),
                list(salt_bytes),
                self.clock_object_id,
            ],
        )

    def create_poll(self, title: str, option_a: str, option_b: str) -> Tuple[TransactionResult, Optional[str]]:
        result = self.move_call("create_poll", [title, option_a, option_b, self.clock_object_id])
        poll_type = f"{self.module_name}::Poll"
        for change in result.object_changes:
            if change.get("type") == "created" and poll_type in str(change.get("objectType", "")):
                return result, change.get("objectId")
        return result, None

    def claim_reward(self, poll_id: str, signer: Optional[Ed25519Signer] = None) -> TransactionResult:
        return self.move_call("claim_reward", [poll_id, self.clock_object_id], signer=signer)

    def withdraw_stake(self, poll_id: str, signer: Optional[Ed25519Signer] = None) -> TransactionResult:
        return self.move_call("withdraw_stake", [poll_id, self.clock_object_id], signer=signer)

    # --- Queries ---

    def get_transaction(self, digest: str) -> Dict[str, Any]:
        return self._rpc(
            "sui_getTransactionBlock",
            [
                digest,
                {
                    "showInput": True,
                    "showEffects": True,
                    "showEvents": True,
                    "showBalanceChanges": True,
                },
            ],
        ) or {}

    def wait_for_finality(self, digest: str) -> Dict[str, Any]:
        last_error = None
        for attempt in range(1, self.finality_attempts + 1):
            try:
                tx = self._rpc(
                    "sui_getTransactionBlock",
                    [digest, {"showEffects": True, "showEvents": True}],
                )
            except MoveAbort:
                raise
            except LedgerError as e:
                if not isinstance(e, LedgerUnavailable) and not any(h in str(e) for h in NOT_FOUND_HINTS):
                    raise
                last_error = e
                tx = None
            if tx and tx.get("effects"):
                return tx["effects"]
            if attempt < self.finality_attempts:
                self.sleep(self.finality_interval)
        raise LedgerUnavailable(
            f"Transaction {digest} not final after {self.finality_attempts} attempts: {last_error}"
        )

    def get_object_fields(self, object_id: str) -> Dict[str, Any]:
        obj = self._rpc("sui_getObject", [object_id, {"showContent": True}]) or {}
        content = (obj.get("data") or {}).get("content") or {}
        fields = content.get("fields")
        if fields is None:
            raise LedgerError(f"Object {object_id} has no readable fields: {obj.get('error')}")
        fields = dict(fields)
        for key in ("count_a", "count_b", "created_at"):
            if key in fields and fields[key] is not None:
                fields[key] = int(fields[key])
        return fields

    def get_commitment(self, digest: str) -> Optional[bytes]:
        """
        The commitment hash registered by a ``commit_vote`` transaction, read
        from its programmable transaction inputs. None if it cannot be found.
        """
        tx = self.get_transaction(digest)
        data = ((tx.get("transaction") or {}).get("data") or {}).get("transaction") or {}
        inputs = data.get("inputs") or []
        for command in data.get("transactions") or []:
            call = command.get("MoveCall") if isinstance(command, dict) else None
            if not call or call.get("function") != "commit_vote":
                continue
            arguments = call.get("arguments") or []
            if len(arguments) < 2 or not isinstance(arguments[1], dict):
                return None
            index = arguments[1].get("Input")
            if index is None or index >= len(inputs):
                return None
            value = inputs[index].get("value")
            if isinstance(value, list):
                return bytes(value)
            return None
        return None
