"""Delete webhook ledger rows older than the configured retention horizon."""

import argparse

from orderpay.common.config import Settings
from orderpay.common.db import make_engine, make_session_factory
from orderpay.common.logging import configure_logging, logger
from orderpay.services.webhooks.service import WebhookReconciler


def main() -> None:
    """CLI entrypoint for the retention purge."""

    parser = argparse.ArgumentParser(description="Purge expired webhook ledger rows.")
    parser.add_argument("--retention-days", type=int, help="override WEBHOOK_RETENTION_DAYS")
    args = parser.parse_args()

    settings = Settings()
    if args.retention_days is not None:
        settings = settings.model_copy(update={"webhook_retention_days": args.retention_days})
    configure_logging(settings)

    session_factory = make_session_factory(make_engine(settings.database_dsn))
    # The purge never touches the gateway or the coordinators.
    reconciler = WebhookReconciler(session_factory, settings, payments=None, refunds=None, gateway=None)
    deleted = reconciler.purge_expired()
    logger.info("webhook purge finished deleted=%s", deleted)
    print(f"deleted={deleted}")


if __name__ == "__main__":
    main()
