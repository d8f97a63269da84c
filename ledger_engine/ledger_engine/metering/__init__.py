"""Usage metering: charging priced model calls against account balances."""

from ledger_engine.metering.charger import ChargeResult, UsageCharger
from ledger_engine.metering.events import UsageEvent

__all__ = ["ChargeResult", "UsageCharger", "UsageEvent"]
