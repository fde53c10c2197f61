import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_PATH)

from paygate.chain import build_chain_reader  # noqa: E402
from paygate.config import Settings  # noqa: E402
from paygate.settlement import format_units  # noqa: E402
from paygate.wallet import wallet_status  # noqa: E402

settings = Settings()
token = os.getenv("USDC_ADDRESS")  # optional, enables the balance line

status = wallet_status(settings)
print(status.model_dump_json(exclude_none=True))

if not status.configured:
    raise SystemExit(1)

chain = build_chain_reader(settings.chain_rpc_url, settings.http_timeout_seconds)
if chain and token:
    balance = asyncio.run(chain.token_balance(token, status.address))
    print(f"USDC balance: {format_units(balance)}")
