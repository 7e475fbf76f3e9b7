#!/usr/bin/env python3
"""
Print every active wallet with a sample deep link.
Run from the project root: python -m scripts.print_deeplinks [amount] [currency]
or: PYTHONPATH=. python scripts/print_deeplinks.py 150.00 ETB
"""
import asyncio
import os
import sys
from types import SimpleNamespace

# project root on PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import settings
from app.core.logging import configure_logging
from app.services.payments.repository import PaymentRepository
from app.services.payments.service import build_deep_link


async def main(amount: str, currency: str) -> None:
    wallets = await PaymentRepository().get_active_wallet_configs()
    if not wallets:
        print("No active wallets configured.")
        return
    sample = SimpleNamespace(amount=amount, id="SAMPLE-REFERENCE", currency=currency)
    print(f"Deep links (amount={amount} {currency}):\n")
    for w in wallets:
        print(f"  {w.wallet_name} [{w.wallet_type}]\n    {build_deep_link(w.deep_link_template, sample)}\n")


if __name__ == "__main__":
    configure_logging()
    args = sys.argv[1:]
    asyncio.run(main(
        args[0] if args else "100.00",
        args[1] if len(args) > 1 else settings.default_currency,
    ))
