"""RQ worker process entrypoint for video processing jobs."""

from rq import Worker

from config import settings
from services.processing_queue import VIDEO_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection(settings.REDIS_URL)
    worker = Worker([VIDEO_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
