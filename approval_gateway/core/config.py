from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("voucher-approval-gateway", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Storage (SQLite file shared by operations, transfers and the voucher directory)
    database_path: str = Field("approval_gateway.db", alias="DATABASE_PATH")

    # CORS allowed origins (comma-separated list for production deployment)
    cors_origins: str = Field("http://localhost:3000,http://127.0.0.1:3000", alias="CORS_ORIGINS")

    # Multi-signature operations
    multisig_min_signatures: int = Field(2, ge=2, le=10, alias="MULTISIG_MIN_SIGNATURES")
    multisig_max_signatures: int = Field(10, ge=2, le=10, alias="MULTISIG_MAX_SIGNATURES")
    multisig_default_expiry_hours: int = Field(24, alias="MULTISIG_DEFAULT_EXPIRY_HOURS")
    multisig_type_signatures: str = Field(
        "MODIFY_CRITICAL_SETTINGS=3,DELETE_MULTIPLE_VOUCHERS=3,CHANGE_MERCHANT_STATUS=3",
        alias="MULTISIG_TYPE_SIGNATURES",
    )  # Comma-separated TYPE=count overrides
    multisig_allow_initiator_signature: bool = Field(False, alias="MULTISIG_ALLOW_INITIATOR_SIGNATURE")
    multisig_auto_execute: bool = Field(False, alias="MULTISIG_AUTO_EXECUTE")
    multisig_max_conflict_retries: int = Field(10, alias="MULTISIG_MAX_CONFLICT_RETRIES")

    # Voucher transfers
    transfer_approval_amount_threshold: float = Field(500.0, alias="TRANSFER_APPROVAL_AMOUNT_THRESHOLD")
    transfer_approval_types: str = Field("partial", alias="TRANSFER_APPROVAL_TYPES")  # Comma-separated (empty = none)
    transfer_expiry_hours: int = Field(72, alias="TRANSFER_EXPIRY_HOURS")

    # Ledger gateway
    ledger_url: str | None = Field(default=None, alias="LEDGER_URL")
    ledger_api_key: str | None = Field(default=None, alias="LEDGER_API_KEY")
    ledger_timeout_seconds: float = Field(15.0, alias="LEDGER_TIMEOUT_SECONDS")

    # Expiry sweeper
    expiry_sweep_enabled: bool = Field(True, alias="EXPIRY_SWEEP_ENABLED")
    expiry_sweep_interval_seconds: int = Field(60, alias="EXPIRY_SWEEP_INTERVAL_SECONDS")

    # Audit events (Azure Service Bus)
    service_bus_connection_string: str | None = Field(default=None, alias="SERVICE_BUS_CONNECTION_STRING")
    service_bus_queue: str = Field("approval-events", alias="SERVICE_BUS_QUEUE")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "populate_by_name": True}

    def type_signature_overrides(self) -> dict[str, int]:
        """Parse MULTISIG_TYPE_SIGNATURES into {operation_type: count}"""
        overrides = {}
        for item in self.multisig_type_signatures.split(","):
            if "=" not in item:
                continue
            name, _, count = item.partition("=")
            overrides[name.strip().upper()] = int(count.strip())
        return overrides

    def approval_transfer_types(self) -> set[str]:
        return {t.strip().lower() for t in self.transfer_approval_types.split(",") if t.strip()}

settings = Settings()
