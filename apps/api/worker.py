"""RQ worker process entrypoint for Stripe webhook events."""

from rq import Worker

from config import settings
from services.webhook_queue import get_redis_connection


def main():
    # One worker per queue keeps the webhook group strictly FIFO.
    redis_conn = get_redis_connection()
    worker = Worker([settings.WEBHOOK_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
