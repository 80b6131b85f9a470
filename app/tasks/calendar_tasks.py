# ===== app/tasks/calendar_tasks.py =====
from datetime import timedelta

from app.config.celery_config import celery_app
from app.config.database import SessionLocal
from app.config.settings import get_settings
from app.core.exceptions import NotFound, ProviderUnavailable
from app.services.service_factory import build_services
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

WEBHOOK_RENEWAL_WINDOW = timedelta(hours=24)


def _services(task, db):
    return build_services(db, task.app.adapter_factory, getattr(task.app, "notifier", None), settings)


@celery_app.task(bind=True, max_retries=settings.MAX_RETRY_ATTEMPTS)
def sync_integration(self, integration_id: str):
    """Reconcile one integration; provider outages retry with exponential backoff"""
    db = SessionLocal()
    try:
        result = _services(self, db).sync_engine.run_sync(integration_id)
        return result.model_dump()

    except NotFound:
        logger.info(f"Skipping sync of integration {integration_id}: not found or inactive")
        return {"integration_id": integration_id, "status": "skipped", "error": "integration_not_found_or_inactive"}

    except ProviderUnavailable as exc:
        if self.request.retries >= self.max_retries:
            logger.error(f"Giving up on integration {integration_id} after {self.request.retries} retries: {exc}")
            return {"integration_id": integration_id, "status": "failed", "error": "provider_unavailable"}

        countdown = 60 * (2 ** self.request.retries)
        logger.warning(f"Provider unavailable for integration {integration_id}, retrying in {countdown}s")
        raise self.retry(exc=exc, countdown=countdown)

    finally:
        db.close()


@celery_app.task(bind=True)
def sync_all_integrations(self):
    """Periodic fan-out: one sync task per active integration"""
    db = SessionLocal()
    try:
        integrations = _services(self, db).registry.list_active()
        queued = 0
        for integration in integrations:
            if integration.needs_reauth:
                continue
            sync_integration.delay(str(integration.id))
            queued += 1

        logger.info(f"Queued sync for {queued} of {len(integrations)} active integrations")
        return {"status": "success", "queued": queued}

    finally:
        db.close()


@celery_app.task(bind=True)
def renew_webhook_subscriptions(self):
    """Re-subscribe push channels that expire within the renewal window"""
    db = SessionLocal()
    try:
        registry = _services(self, db).registry
        renewed, failed = 0, 0
        for integration in registry.expiring_subscriptions(WEBHOOK_RENEWAL_WINDOW):
            outcome = registry.renew_webhook_subscription(integration)
            if outcome.ok:
                renewed += 1
            else:
                failed += 1
                logger.warning(f"Webhook renewal failed for integration {integration.id}: {outcome.warning}")

        logger.info(f"Renewed {renewed} webhook subscriptions ({failed} failed)")
        return {"status": "success", "renewed": renewed, "failed": failed}

    finally:
        db.close()
