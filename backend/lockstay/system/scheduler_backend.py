"""
APScheduler 调度后端
对账任务（过期、自动完成）通过它周期执行
"""
import logging
from typing import Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from lockcore.scheduler import ISchedulerBackend

logger = logging.getLogger(__name__)


class APSchedulerBackend(ISchedulerBackend):
    """基于 BackgroundScheduler 的调度后端"""

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler or BackgroundScheduler()

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def add_job(self, job_id: str, func: Callable, trigger: str, **trigger_args) -> None:
        if trigger == "cron":
            cron_trigger = CronTrigger.from_crontab(trigger_args.pop("cron_expression"))
            self._scheduler.add_job(
                func, trigger=cron_trigger, id=job_id, replace_existing=True, **trigger_args
            )
        else:
            self._scheduler.add_job(
                func, trigger=trigger, id=job_id, replace_existing=True, **trigger_args
            )
        logger.info(f"Job {job_id} registered ({trigger})")

    def remove_job(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"Job {job_id} not found, nothing to remove")

    def pause_job(self, job_id: str) -> None:
        self._scheduler.pause_job(job_id)

    def resume_job(self, job_id: str) -> None:
        self._scheduler.resume_job(job_id)

    @staticmethod
    def _job_info(job) -> Dict:
        return {
            "id": job.id,
            "name": job.name or job.id,
            "trigger": str(job.trigger),
            "next_run_time": job.next_run_time,
            "status": "active" if job.next_run_time else "paused",
        }

    def get_jobs(self) -> List[Dict]:
        return [self._job_info(job) for job in self._scheduler.get_jobs()]

    def get_job(self, job_id: str) -> Optional[Dict]:
        job = self._scheduler.get_job(job_id)
        return self._job_info(job) if job else None

    def trigger_job(self, job_id: str) -> None:
        job = self._scheduler.get_job(job_id)
        if job is None:
            raise ValueError(f"Job not found: {job_id}")
        job.func(*job.args, **job.kwargs)
