from celery import Celery

# Create Celery app
celery = Celery("notifyrules")

# Load configuration from notifyrules.config.celeryconfig module
celery.config_from_object("notifyrules.config.celeryconfig")
