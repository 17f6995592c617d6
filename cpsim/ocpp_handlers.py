import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from ocpp.routing import on
from ocpp.v16 import call, call_result, ChargePoint as CP
from ocpp.v16.enums import (
    Action,
    AuthorizationStatus,
    AvailabilityStatus,
    CertificateSignedStatus,
    ChargePointErrorCode,
    ChargePointStatus,
    ClearCacheStatus,
    DataTransferStatus,
    DeleteCertificateStatus,
    DiagnosticsStatus,
    GetInstalledCertificateStatus,
    LogStatus,
    Reason,
    RegistrationStatus,
    ResetStatus,
    TriggerMessageStatus,
    UpdateFirmwareStatus,
)

from .config import VERSION


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EVSEChargePoint(CP):
    """OCPP 1.6 charge point bound to one WebSocket connection.

    Inbound commands are delegated to the runtime's components; the
    ``async`` helpers below are the outbound requests those components send.
    """

    def __init__(self, id, connection, runtime):
        super().__init__(id, connection)
        self.runtime = runtime

    # ====== charge point -> CSMS ======

    async def boot_notification(self) -> int:
        settings = self.runtime.ctx.settings
        req = call.BootNotification(
            charge_point_model=settings.model,
            charge_point_vendor=settings.vendor,
            charge_point_serial_number=settings.charge_point_id,
            firmware_version=VERSION,
        )
        conf = await self.call(req, suppress=False)
        if conf.status != RegistrationStatus.accepted:
            logging.warning(f"BootNotification {conf.status}")
        return conf.interval

    async def status_notification(self, connector_id: int, status: ChargePointStatus) -> None:
        req = call.StatusNotification(
            connector_id=connector_id,
            error_code=ChargePointErrorCode.no_error,
            status=status,
            timestamp=now(),
        )
        await self.call(req, suppress=False)
        logging.info(f"StatusNotification sent: connector={connector_id}, status={status}")

    async def start_transaction(
        self, connector_id: int, id_tag: str, meter_start: int
    ) -> Tuple[int, AuthorizationStatus]:
        req = call.StartTransaction(
            connector_id=connector_id,
            id_tag=id_tag,
            meter_start=meter_start,
            timestamp=now(),
        )
        conf = await self.call(req, suppress=False)
        return conf.transaction_id, conf.id_tag_info["status"]

    async def stop_transaction(
        self, transaction_id: int, id_tag: str, meter_stop: int, reason: Reason
    ) -> AuthorizationStatus:
        req = call.StopTransaction(
            meter_stop=meter_stop,
            timestamp=now(),
            transaction_id=transaction_id,
            reason=reason,
            id_tag=id_tag,
        )
        conf = await self.call(req, suppress=False)
        if not conf.id_tag_info:
            return AuthorizationStatus.accepted
        return conf.id_tag_info["status"]

    async def meter_values(self, connector_id: int, transaction_id: int, sampled_values: list) -> None:
        req = call.MeterValues(
            connector_id=connector_id,
            transaction_id=transaction_id,
            meter_value=[{"timestamp": now(), "sampled_value": sampled_values}],
        )
        await self.call(req, suppress=False)

    async def heartbeat(self) -> None:
        await self.call(call.Heartbeat(), suppress=False)

    async def diagnostics_status_notification(self, status: DiagnosticsStatus = DiagnosticsStatus.idle) -> None:
        await self.call(call.DiagnosticsStatusNotification(status=status), suppress=False)

    # ====== CSMS -> charge point: core profile ======

    @on(Action.change_availability)
    async def on_change_availability(self, connector_id, type, **kwargs):
        logging.info(f"ChangeAvailability connector={connector_id} type={type}")
        return call_result.ChangeAvailability(status=AvailabilityStatus.accepted)

    @on(Action.clear_cache)
    async def on_clear_cache(self, **kwargs):
        logging.info("ClearCache")
        return call_result.ClearCache(status=ClearCacheStatus.accepted)

    @on(Action.data_transfer)
    async def on_data_transfer(self, vendor_id, message_id=None, data=None, **kwargs):
        logging.info(f"DataTransfer vendorId={vendor_id}, messageId={message_id}, data={data}")
        return call_result.DataTransfer(status=DataTransferStatus.accepted, data=data)

    @on(Action.reset)
    async def on_reset(self, type, **kwargs):
        logging.info(f"Reset {type}")
        return call_result.Reset(status=ResetStatus.accepted)

    @on(Action.change_configuration)
    async def on_change_configuration(self, key, value, **kwargs):
        result = self.runtime.configuration.change(key, value)
        if result.error is not None:
            logging.warning(f"ChangeConfiguration {key} {result.status}: {result.error}")
        return call_result.ChangeConfiguration(status=result.status)

    @on(Action.get_configuration)
    async def on_get_configuration(self, key: Optional[list] = None, **kwargs):
        registry = self.runtime.configuration
        # an empty request asks for every key
        entries, unknown = registry.get(key or registry.known_keys())
        return call_result.GetConfiguration(
            configuration_key=[{**entry, "readonly": False} for entry in entries],
            unknown_key=unknown,
        )

    @on(Action.remote_start_transaction)
    async def on_remote_start_transaction(self, id_tag, connector_id=None, **kwargs):
        status = self.runtime.transactions.remote_start(connector_id, id_tag)
        return call_result.RemoteStartTransaction(status=status)

    @on(Action.remote_stop_transaction)
    async def on_remote_stop_transaction(self, transaction_id, **kwargs):
        status = self.runtime.transactions.remote_stop(transaction_id)
        return call_result.RemoteStopTransaction(status=status)

    @on(Action.unlock_connector)
    async def on_unlock_connector(self, connector_id, **kwargs):
        status = self.runtime.transactions.unlock_connector(int(connector_id))
        return call_result.UnlockConnector(status=status)

    # ====== firmware / diagnostics / triggers (acknowledged only) ======

    @on(Action.update_firmware)
    async def on_update_firmware(self, location, retrieve_date, **kwargs):
        logging.info(f"UpdateFirmware {location}")
        return call_result.UpdateFirmware()

    @on(Action.get_diagnostics)
    async def on_get_diagnostics(self, location, **kwargs):
        logging.info(f"GetDiagnostics {location}")
        return call_result.GetDiagnostics()

    @on(Action.trigger_message)
    async def on_trigger_message(self, requested_message, connector_id=None, **kwargs):
        logging.info(f"TriggerMessage {requested_message}")
        return call_result.TriggerMessage(status=TriggerMessageStatus.accepted)

    # ====== security extension ======

    @on(Action.install_certificate)
    async def on_install_certificate(self, certificate_type, certificate, **kwargs):
        logging.info(f"InstallCertificate {certificate_type}")
        status = self.runtime.security.install_certificate(certificate_type, certificate)
        return call_result.InstallCertificate(status=status)

    @on(Action.get_installed_certificate_ids)
    async def on_get_installed_certificate_ids(self, certificate_type, **kwargs):
        logging.info("GetInstalledCertificateIds")
        return call_result.GetInstalledCertificateIds(status=GetInstalledCertificateStatus.accepted)

    @on(Action.delete_certificate)
    async def on_delete_certificate(self, certificate_hash_data, **kwargs):
        logging.info("DeleteCertificate")
        return call_result.DeleteCertificate(status=DeleteCertificateStatus.accepted)

    @on(Action.get_log)
    async def on_get_log(self, log, log_type, request_id, **kwargs):
        logging.info(f"GetLog {log_type}")
        return call_result.GetLog(status=LogStatus.accepted)

    @on(Action.signed_update_firmware)
    async def on_signed_update_firmware(self, request_id, firmware, **kwargs):
        logging.info("SignedUpdateFirmware")
        return call_result.SignedUpdateFirmware(status=UpdateFirmwareStatus.accepted)

    @on(Action.extended_trigger_message)
    async def on_extended_trigger_message(self, requested_message, **kwargs):
        logging.info(f"ExtendedTriggerMessage {requested_message}")
        return call_result.ExtendedTriggerMessage(status=TriggerMessageStatus.accepted)

    @on(Action.certificate_signed)
    async def on_certificate_signed(self, certificate_chain, **kwargs):
        logging.info("CertificateSigned")
        return call_result.CertificateSigned(status=CertificateSignedStatus.accepted)
