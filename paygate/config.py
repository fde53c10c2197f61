from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass(frozen=True)
class Settings:
    app_name: str = "Paygate x402 Executor"
    resource_service_url: str = os.getenv("RESOURCE_SERVICE_URL", "")
    developer_private_key: str = os.getenv(
        "DEVELOPER_PRIVATE_KEY", os.getenv("CRONOS_DEVELOPER_PRIVATE_KEY", "")
    )
    api_url: str = os.getenv("PAYGATE_API_URL", "http://127.0.0.1:8000")
    chain_rpc_url: str = os.getenv("CHAIN_RPC_URL", "")
    explorer_tx_url: str = os.getenv(
        "EXPLORER_TX_URL", "https://explorer.cronos.org/testnet/tx/"
    )
    http_timeout_seconds: float = _env_float("HTTP_TIMEOUT_SECONDS", "30")
    # 0 disables the limit on a pending connected-wallet signature
    signing_timeout_seconds: float = _env_float("SIGNING_TIMEOUT_SECONDS", "300")
    authorization_ttl_seconds: int = int(os.getenv("AUTHORIZATION_TTL_SECONDS", "3600"))
    api_key: str = os.getenv("API_KEY", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "8000"))

    @property
    def resource_configured(self) -> bool:
        return bool(self.resource_service_url.strip())

    @property
    def resource_base_url(self) -> str:
        return self.resource_service_url.strip().rstrip("/")

    @property
    def developer_wallet_configured(self) -> bool:
        return bool(self.developer_private_key.strip())

    def explorer_link(self, tx_hash: str) -> str:
        if not self.explorer_tx_url:
            return ""
        return f"{self.explorer_tx_url}{tx_hash}"

    def __repr__(self) -> str:
        key_state = "set" if self.developer_wallet_configured else "unset"
        return (
            f"Settings(resource_service_url={self.resource_service_url!r}, "
            f"api_url={self.api_url!r}, developer_private_key=<{key_state}>)"
        )


settings = Settings()


def get_settings() -> Settings:
    return settings
