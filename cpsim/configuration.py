import logging
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

from ocpp.v16.enums import ConfigurationStatus

from .config import (
    DEFAULT_CONFIGURATION,
    DEFAULT_HEARTBEAT_SEC,
    DEFAULT_METER_PERIOD_SEC,
    REBOOT_DELAY_SEC,
    SUPPORTED_CONFIGURATION_KEYS,
)
from .context import RuntimeContext
from .security import AUTHORIZATION_KEY, SECURITY_PROFILE_KEY, SecurityProfileError, SecurityProfileManager
from .store import StoreError, Txn


class ChangeResult(NamedTuple):
    status: ConfigurationStatus
    error: Optional[Exception] = None


def seed_defaults(txn: Txn) -> None:
    for key, value in DEFAULT_CONFIGURATION.items():
        txn.set_if_absent(key, value)


class ConfigurationRegistry:
    def __init__(
        self,
        ctx: RuntimeContext,
        security: SecurityProfileManager,
        reconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.ctx = ctx
        self.security = security
        self.reconnect = reconnect

    def change(self, key: str, value: str) -> ChangeResult:
        logging.info(f"ChangeConfiguration {key}")
        if key not in SUPPORTED_CONFIGURATION_KEYS:
            return ChangeResult(ConfigurationStatus.not_supported)

        requires_reconnect = False
        try:
            with self.ctx.store.update() as txn:
                if key == SECURITY_PROFILE_KEY:
                    requires_reconnect = self.security.validate(txn, value)
                txn.set(key, value)
        except (SecurityProfileError, StoreError) as e:
            logging.error(f"Error updating configuration key={key} value={value}: {e}")
            return ChangeResult(ConfigurationStatus.rejected, e)

        if requires_reconnect:
            logging.info("Security profile change requires reboot")
            self.ctx.spawn(self._delayed_reconnect())
        return ChangeResult(ConfigurationStatus.accepted)

    def get(self, keys: List[str]) -> Tuple[List[Dict[str, str]], List[str]]:
        logging.info(f"GetConfiguration {keys}")
        entries: List[Dict[str, str]] = []
        unknown: List[str] = []
        with self.ctx.store.view() as txn:
            for key in keys:
                raw = txn.get_raw(key) if key in SUPPORTED_CONFIGURATION_KEYS else None
                if not raw:
                    unknown.append(key)
                    continue
                if key == AUTHORIZATION_KEY:
                    # write-only, reported without its value
                    entries.append({"key": key})
                    continue
                entries.append({"key": key, "value": raw})
        return entries, unknown

    def known_keys(self) -> List[str]:
        with self.ctx.store.view() as txn:
            return sorted(k for k in SUPPORTED_CONFIGURATION_KEYS if txn.get_raw(k))

    def heartbeat_interval(self) -> int:
        return self.ctx.store.get("HeartbeatInterval", 0) or DEFAULT_HEARTBEAT_SEC

    def sample_interval(self) -> int:
        return self.ctx.store.get("MeterValueSampleInterval", 0) or DEFAULT_METER_PERIOD_SEC

    def sampled_measurands(self) -> List[str]:
        raw = self.ctx.store.get("MeterValuesSampledData", "")
        return [m.strip() for m in raw.split(",") if m.strip()]

    async def _delayed_reconnect(self) -> None:
        await self.ctx.sleep(REBOOT_DELAY_SEC)
        if self.reconnect is None:
            return
        try:
            await self.reconnect()
        except Exception as e:
            logging.error(f"Error rebooting charger: {e}")
