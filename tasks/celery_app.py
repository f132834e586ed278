from celery import Celery
import os
from dotenv import load_dotenv

load_dotenv()

app = Celery('voxtro', broker=os.getenv('CELERY_BROKER_URL'))

# Enable a result backend so task states (e.g., STARTED) are persisted
_result_backend = os.getenv('CELERY_RESULT_BACKEND', os.getenv('CELERY_BROKER_URL'))
if _result_backend:
	app.conf.update(result_backend=_result_backend)

# Track when tasks start so polling can show STARTED (not only PENDING)
app.conf.update(task_track_started=True)

# Optionally emit task events for Flower/monitoring
app.conf.update(worker_send_task_events=True, task_send_sent_event=True)

app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    result_expires=86400,  # 24 hours
    timezone='UTC',
    enable_utc=True,
)

app.autodiscover_tasks(['tasks'])

import tasks.leads
import tasks.crawl
import tasks.whatsapp
import tasks.conversations
import tasks.actions
import tasks.weekly_summary
