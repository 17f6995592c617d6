import os
from dataclasses import dataclass

VERSION = "4.0.0"

CSMS_URL = os.getenv("CSMS_URL", "")
CPID = os.getenv("CPID", "")
DB_PATH = os.getenv("DB_PATH", "db")
HTTP_PORT = int(os.getenv("HTTP_PORT", "0"))  # 0 = random free port
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")

# TLS configuration for security profile 2 (optional)
TLS_CA_CERT = os.getenv("TLS_CA_CERT")  # built-in trust anchor when none is installed
TLS_SKIP_HOSTNAME_CHECK = os.getenv("TLS_SKIP_HOSTNAME_CHECK", "false").lower() in ("1", "true", "yes")

CHARGE_POINT_VENDOR = os.getenv("CHARGE_POINT_VENDOR", "ChargeForge")
CHARGE_POINT_MODEL = os.getenv("CHARGE_POINT_MODEL", "Sim-DC")

# timings (seconds)
DEFAULT_HEARTBEAT_SEC = 300
DEFAULT_METER_PERIOD_SEC = 60
DIAGNOSTICS_PERIOD_SEC = 20 * 60
UNLOCK_TIMEOUT_SEC = 2 * 60
REBOOT_DELAY_SEC = 1.5
STATUS_HOLD_SEC = 1

NO_SECURITY_PROFILE = 0
BASIC_SECURITY_PROFILE = 1
BASIC_SECURITY_WITH_TLS_PROFILE = 2

# store keys
STARTED_AT = "started_at"
STOPPED_AT = "stopped_at"
CHARGE_POINT_ID = "charge_point_id"
CS_URL = "cs_url"
CP_VERSION = "cp_version"
STORE_PATH = "db_path"

ROOT_CERTIFICATE = "root_certificate"

CURRENT_TX_ID = "current_transaction_id"
CURRENT_TX_CONNECTOR_ID = "current_transaction_connector_id"
CURRENT_TX_ID_TAG = "current_transaction_id_tag"
UNLOCKED_CONNECTOR_ID = "unlocked_connector_id"

ENERGY_KEY = "meter_value__energy"
INSTANTANEOUS_POWER_KEY = "meter_value__instantaneous_power"
INSTANTANEOUS_VOLTAGE_KEY = "meter_value__instantaneous_voltage"
INSTANTANEOUS_CURRENT_KEY = "meter_value__instantaneous_current"
INSTANTANEOUS_TEMPERATURE_KEY = "meter_value__instantaneous_temperature"
BATTERY_PERCENTAGE_KEY = "meter_value__battery_percentage"

METER_KEYS = (
    ENERGY_KEY,
    INSTANTANEOUS_POWER_KEY,
    INSTANTANEOUS_VOLTAGE_KEY,
    INSTANTANEOUS_CURRENT_KEY,
    INSTANTANEOUS_TEMPERATURE_KEY,
    BATTERY_PERCENTAGE_KEY,
)

TRANSACTION_KEYS = (CURRENT_TX_ID, CURRENT_TX_CONNECTOR_ID, CURRENT_TX_ID_TAG)

# OCPP configuration keys the charge point answers for; numeric ones are
# stored as integers
NUMERIC_CONFIGURATION_KEYS = frozenset((
    "ClockAlignedDataInterval",
    "ConnectionTimeOut",
    "GetConfigurationMaxKeys",
    "HeartbeatInterval",
    "MeterValueSampleInterval",
    "NumberOfConnectors",
    "ResetRetries",
    "TransactionMessageAttempts",
    "TransactionMessageRetryInterval",
    "WebSocketPingInterval",
    "LocalAuthListMaxLength",
    "SendLocalListMaxLength",
    "ChargeProfileMaxStackLevel",
    "ChargingScheduleMaxPeriods",
    "MaxChargingProfilesInstalled",
    "SecurityProfile",
    "CertificateStoreMaxLength",
))

SUPPORTED_CONFIGURATION_KEYS = NUMERIC_CONFIGURATION_KEYS | frozenset((
    "AuthorizeRemoteTxRequests",
    "AuthorizationCacheEnabled",
    "ConnectorPhaseRotation",
    "LocalAuthorizeOffline",
    "LocalPreAuthorize",
    "MeterValuesAlignedData",
    "MeterValuesSampledData",
    "StopTransactionOnEVSideDisconnect",
    "StopTransactionOnInvalidId",
    "StopTxnAlignedData",
    "StopTxnSampledData",
    "SupportedFeatureProfiles",
    "UnlockConnectorOnEVSideDisconnect",
    "LocalAuthListEnabled",
    "ChargingScheduleAllowedChargingRateUnit",
    "SupportedFileTransferProtocols",
    "CpoName",
    "AdditionalRootCertificateCheck",
    "AuthorizationKey",
))

DEFAULT_CONFIGURATION = {
    "SecurityProfile": NO_SECURITY_PROFILE,
    "MeterValueSampleInterval": 300,
    "MeterValuesSampledData": "Energy.Active.Import.Register",
    "CertificateStoreMaxLength": 1,
    "HeartbeatInterval": DEFAULT_HEARTBEAT_SEC,
}


@dataclass
class Settings:
    """Process level inputs; everything else lives in the store."""

    charge_point_id: str
    csms_url: str
    db_path: str = DB_PATH
    http_host: str = HTTP_HOST
    http_port: int = HTTP_PORT
    ca_cert: str | None = TLS_CA_CERT
    skip_hostname_check: bool = TLS_SKIP_HOSTNAME_CHECK
    vendor: str = CHARGE_POINT_VENDOR
    model: str = CHARGE_POINT_MODEL

    @property
    def url(self) -> str:
        return f"{self.csms_url.rstrip('/')}/{self.charge_point_id}"
