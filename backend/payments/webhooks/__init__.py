from .processor import WebhookProcessor, get_webhook_processor

__all__ = ["WebhookProcessor", "get_webhook_processor"]
