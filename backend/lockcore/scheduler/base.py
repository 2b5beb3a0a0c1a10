"""
定时任务抽象

ISchedulerBackend 描述调度框架需要提供的能力，SchedulerRegistry 保存进程内唯一的后端实例。
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional


class ISchedulerBackend(ABC):
    """调度后端"""

    @property
    @abstractmethod
    def running(self) -> bool:
        """调度器是否在运行"""

    @abstractmethod
    def start(self) -> None:
        """启动；重复调用无副作用"""

    @abstractmethod
    def shutdown(self) -> None:
        """停止，不等待正在执行的任务"""

    @abstractmethod
    def add_job(self, job_id: str, func: Callable, trigger: str, **trigger_args) -> None:
        """注册任务，job_id 已存在时覆盖

        Args:
            job_id: 任务 id
            func: 任务函数（无参）
            trigger: 'interval' / 'cron' / 'date'
            **trigger_args: interval 用 seconds 等；cron 用 cron_expression；
                max_instances、coalesce 原样交给调度框架
        """

    @abstractmethod
    def remove_job(self, job_id: str) -> None:
        """删除任务，不存在时忽略"""

    @abstractmethod
    def pause_job(self, job_id: str) -> None:
        ...

    @abstractmethod
    def resume_job(self, job_id: str) -> None:
        ...

    @abstractmethod
    def get_jobs(self) -> List[Dict]:
        """任务快照列表，字段：id, name, trigger, next_run_time, status"""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Dict]:
        ...

    @abstractmethod
    def trigger_job(self, job_id: str) -> None:
        """在调用线程里同步跑一次任务，任务不存在抛 ValueError"""


class SchedulerRegistry:
    """进程内调度后端注册表（单例）

    main.lifespan 启动时 set_backend，关闭时 shutdown；
    路由通过 jobs() 读取任务列表，未启用调度时返回空列表。
    """

    _instance: Optional["SchedulerRegistry"] = None

    def __new__(cls) -> "SchedulerRegistry":
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._backend = None
            cls._instance = instance
        return cls._instance

    def set_backend(self, backend: ISchedulerBackend) -> None:
        self._backend = backend

    def get_backend(self) -> Optional[ISchedulerBackend]:
        return self._backend

    def jobs(self) -> List[Dict]:
        if self._backend is None:
            return []
        return self._backend.get_jobs()

    def shutdown(self) -> None:
        """停止已注册的后端并清空注册表"""
        backend, self._backend = self._backend, None
        if backend is not None and backend.running:
            backend.shutdown()

    def clear(self) -> None:
        self._backend = None
