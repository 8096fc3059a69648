from celery import Celery
from payhook.core.config import get_settings

settings = get_settings()

celery = Celery(
    "payhook",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

# Import tasks
celery.conf.imports = ["payhook.tasks"]

# Set task routes
celery.conf.task_routes = {"payhook.tasks.process_delivery": {"queue": "deliveries"}}
