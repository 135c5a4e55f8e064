"""
Order Service: JSON ファイルからの初期データ投入 (Seed Loader)

    order-service-seed data.json [--store sql|redis|memory]

ファイルは注文の JSON 配列。各注文は今発注されたものとして扱い、
新しい ID と PendingPayment ステータスを与える。ファイル側の
``_id`` / ``status`` / ``statusMessage`` は検証前に捨てるので、
旧形式のステータス文字列 ("Pending Payment" など) が入っていても読める。
カード情報は保存しない。読めない注文はログに残してスキップする。
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path

from .adapters import decode
from .config import Settings
from .errors import OrderServiceError
from .log import configure_logging
from .models import Order, OrderStatus
from .store import OrderStore, build_store

logger = logging.getLogger(__name__)

# 投入時に必ず振り直すフィールド
_REASSIGNED = ("_id", "status", "statusMessage")


async def seed_orders(store: OrderStore, records: list) -> int:
    """各レコードを新規注文として書き込む。保存できた件数を返す。"""
    stored = 0
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            logger.error("Skipping order #%d: not a JSON object", index)
            continue
        fields = {k: v for k, v in record.items() if k not in _REASSIGNED}
        try:
            order = decode(Order, fields).model_copy(update={"status": OrderStatus.PENDING_PAYMENT})
            order = await store.create(order)
        except OrderServiceError as e:
            logger.error("Skipping order #%d: %s", index, e)
            continue
        stored += 1
        logger.info("Seeded order %s for user %s", order.order_id, order.user_id)
    return stored


async def _run(settings: Settings, records: list) -> int:
    store = build_store(settings)
    try:
        await store.setup()
        return await seed_orders(store, records)
    finally:
        await store.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Load orders from a JSON file into the order store")
    parser.add_argument("path", type=Path, help="JSON file containing an array of orders")
    parser.add_argument("--store", choices=["memory", "sql", "redis"], help="override ORDER_STORE")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    if args.store:
        settings = settings.model_copy(update={"order_store": args.store})
    configure_logging(settings.log_level)

    try:
        records = json.loads(args.path.read_text())
    except OSError as e:
        parser.error(f"cannot read {args.path}: {e.strerror or e}")
    except json.JSONDecodeError as e:
        parser.error(f"{args.path} is not valid JSON: {e}")
    if not isinstance(records, list):
        parser.error(f"{args.path} must contain a JSON array of orders")

    stored = asyncio.run(_run(settings, records))
    logger.info("Seeded %d of %d orders", stored, len(records))
    return 0 if stored == len(records) else 1


if __name__ == "__main__":
    raise SystemExit(main())
