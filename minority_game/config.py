import os
from typing import List, Optional

from pydantic import BaseModel


SUI_FULLNODES = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}

# drand "default" mainnet chain (chained, 30s rounds)
DRAND_CHAIN_HASH = "8990e7a9aaed2ffed73dbd7092123d6f289930540d7651336225dc172e51b2ce"
DRAND_GENESIS_TIME = 1595431050
DRAND_PERIOD = 30


class ConfigurationError(RuntimeError):
    """Required configuration is missing or invalid."""


class Settings(BaseModel):
    # Phase timing (seconds)
    voting_duration: int = 3600
    reveal_duration: int = 1800

    # Time-lock beacon
    drand_url: str = "https://api.drand.sh"
    drand_chain_hash: str = DRAND_CHAIN_HASH
    drand_genesis_time: int = DRAND_GENESIS_TIME
    drand_period: int = DRAND_PERIOD
    tlock_service_url: Optional[str] = None

    # Ledger
    ledger_network: str = "testnet"
    ledger_rpc_url: Optional[str] = None
    package_id: Optional[str] = None
    module_name: str = "minority_game"
    admin_secret_key: Optional[str] = None
    admin_cap_id: Optional[str] = None
    clock_object_id: str = "0x6"
    gas_budget: int = 100_000_000  # 0.1 SUI
    finality_attempts: int = 10
    finality_interval: float = 1.0

    # Abort codes raised by minority_game::reveal_vote
    abort_window_elapsed: int = 0
    abort_already_revealed: int = 9

    # Service
    cron_secret: Optional[str] = None
    topic_source_url: Optional[str] = None

    @property
    def rpc_url(self) -> str:
        if self.ledger_rpc_url:
            return self.ledger_rpc_url
        try:
            return SUI_FULLNODES[self.ledger_network]
        except KeyError:
            raise ConfigurationError(f"Unknown ledger network: {self.ledger_network}")

    def missing_for_reveal(self) -> List[str]:
        required = {
            "ADMIN_SECRET_KEY": self.admin_secret_key,
            "PACKAGE_ID": self.package_id,
            "ADMIN_CAP_ID": self.admin_cap_id,
            "TLOCK_SERVICE_URL": self.tlock_service_url,
        }
        return [name for name, value in required.items() if not value]

    def require_reveal(self) -> None:
        """Fail fast before a reveal pass touches anything."""
        missing = self.missing_for_reveal()
        if missing:
            raise ConfigurationError(f"Config missing: {', '.join(missing)}")

    def can_sign(self) -> bool:
        return bool(self.admin_secret_key and self.package_id)

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}")

        def _float(name: str, default: float) -> float:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}")

        return cls(
            voting_duration=_int("VOTING_DURATION", 3600),
            reveal_duration=_int("REVEAL_DURATION", 1800),
            drand_url=env.get("DRAND_URL", "https://api.drand.sh"),
            drand_chain_hash=env.get("DRAND_CHAIN_HASH", DRAND_CHAIN_HASH),
            drand_genesis_time=_int("DRAND_GENESIS_TIME", DRAND_GENESIS_TIME),
            drand_period=_int("DRAND_PERIOD", DRAND_PERIOD),
            tlock_service_url=env.get("TLOCK_SERVICE_URL"),
            ledger_network=env.get("LEDGER_NETWORK", "testnet"),
            ledger_rpc_url=env.get("LEDGER_RPC_URL"),
            package_id=env.get("PACKAGE_ID"),
            module_name=env.get("MODULE_NAME", "minority_game"),
            admin_secret_key=env.get("ADMIN_SECRET_KEY"),
            admin_cap_id=env.get("ADMIN_CAP_ID"),
            clock_object_id=env.get("CLOCK_OBJECT_ID", "0x6"),
            gas_budget=_int("GAS_BUDGET", 100_000_000),
            finality_attempts=_int("FINALITY_ATTEMPTS", 10),
            finality_interval=_float("FINALITY_INTERVAL", 1.0),
            abort_window_elapsed=_int("ABORT_WINDOW_ELAPSED", 0),
            abort_already_revealed=_int("ABORT_ALREADY_REVEALED", 9),
            cron_secret=env.get("CRON_SECRET"),
            topic_source_url=env.get("TOPIC_SOURCE_URL"),
        )
