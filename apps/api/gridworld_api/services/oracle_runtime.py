"""Process-wide oracle client and turn engine wired to the LLM control store."""

from __future__ import annotations

from typing import Optional
import threading

from packages.gridworld_core.llm.task_runner import ProviderInvoker
from packages.gridworld_core.sim.engine import TurnEngine
from packages.gridworld_core.sim.oracle import OracleClient

from ..storage.llm_control import get_policy, insert_call_log


def _build_oracle(provider_invoker: Optional[ProviderInvoker] = None) -> OracleClient:
    return OracleClient(
        policy_lookup=get_policy,
        log_sink=insert_call_log,
        provider_invoker=provider_invoker,
    )


_LOCK = threading.Lock()
_ORACLE = _build_oracle()
_ENGINE = TurnEngine(_ORACLE)


def oracle_client() -> OracleClient:
    with _LOCK:
        return _ORACLE


def turn_engine() -> TurnEngine:
    with _LOCK:
        return _ENGINE


def reset_oracle_runtime_for_tests(*, provider_invoker: Optional[ProviderInvoker] = None) -> None:
    global _ORACLE, _ENGINE
    with _LOCK:
        _ORACLE = _build_oracle(provider_invoker)
        _ENGINE = TurnEngine(_ORACLE)
