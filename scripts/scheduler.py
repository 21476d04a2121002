#!/usr/bin/env python3
"""
自动更新调度

三个后台循环：
- GFWList 规则文件：由 gfwlist 定时器驱动
- 订阅：由 subscription 定时器驱动，每轮最多同时刷新 2 个订阅
- 版本检查：启动时立即检查一次，之后每 7 天一次

两个定时器初始周期为 100 年（相当于关闭），configure() 根据 Setting 调整周期，
运行期修改设置时同样调用 configure()，循环本身不需要重启。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Iterable, List, Optional, Set, Tuple

from configure import AutoUpdateMode, RulePortMode, Setting, TransparentMode
from db_helper import Store
from errors import ProxydError
from gfwlist import RuleListUpdater
from subscription import SubscriptionUpdater
from version_check import VERSION, check_update

logger = logging.getLogger(__name__)

HOUR = 3600.0
SENTINEL_PERIOD = 100 * 365 * 24 * HOUR
VERSION_CHECK_PERIOD = 7 * 24 * HOUR
SUBSCRIPTION_CONCURRENCY = 2

VersionChecker = Callable[[str], Tuple[bool, str]]


class PeriodicTimer:
    """可在运行中修改周期的 asyncio 定时器

    reset() 以当前时刻为起点重新计时，正在 wait() 的循环会按新周期醒来。
    """

    def __init__(self, period: float = SENTINEL_PERIOD):
        self._period = period
        self._deadline = time.monotonic() + period
        self._changed = asyncio.Event()

    @property
    def period(self) -> float:
        return self._period

    def reset(self, period: float) -> None:
        self._period = period
        self._deadline = time.monotonic() + period
        self._changed.set()

    async def wait(self) -> None:
        """阻塞到下一次触发"""
        while True:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                self._deadline = time.monotonic() + self._period
                return
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass


@dataclass
class SchedulerState:
    """进程内唯一的调度状态，由 daemon 创建后显式传递"""
    gfwlist_timer: PeriodicTimer = field(default_factory=PeriodicTimer)
    subscription_timer: PeriodicTimer = field(default_factory=PeriodicTimer)
    found_new: bool = False
    remote_version: str = ""


@dataclass
class RefreshOutcome:
    index: int
    address: str
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    items: Iterable[Any],
    func: Callable[[Any], Awaitable[Any]],
    limit: int,
) -> List[Optional[Exception]]:
    """并发执行 func(item)，同一时刻最多 limit 个，等待全部完成

    Returns:
        与 items 顺序一致的结果列表，成功为 None，失败为对应异常
    """
    semaphore = asyncio.Semaphore(limit)

    async def run_one(item: Any) -> Optional[Exception]:
        async with semaphore:
            try:
                await func(item)
            except Exception as e:
                return e
            return None

    return list(await asyncio.gather(*(run_one(item) for item in items)))


class AutoUpdateScheduler:
    def __init__(
        self,
        store: Store,
        state: SchedulerState,
        rule_list_updater: RuleListUpdater,
        subscription_updater: SubscriptionUpdater,
        version_checker: VersionChecker = check_update,
        current_version: str = VERSION,
    ):
        self.store = store
        self.state = state
        self.rule_list_updater = rule_list_updater
        self.subscription_updater = subscription_updater
        self.version_checker = version_checker
        self.current_version = current_version
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[AutoUpdate] {task.get_name()} failed: {task.exception()}")

    def start(self, setting: Setting) -> None:
        """启动后台循环并按 setting 配置定时器，需在事件循环中调用

        启动时按设置立即执行一次后台刷新；之后运行期的 configure() 只调整周期。
        """
        self._spawn(
            self._timer_loop(self.state.gfwlist_timer, self._tick_rule_list, "GFWList"), "gfwlist-timer"
        )
        self._spawn(
            self._timer_loop(self.state.subscription_timer, self.refresh_subscriptions, "Subscriptions"),
            "subscription-timer",
        )
        self._spawn(self._version_loop(), "version-check")
        self.configure(setting)

        if self._rule_list_enabled(setting) and setting.rule_port_mode == RulePortMode.GFWLIST:
            self._spawn(self._refresh_rule_list_now(), "gfwlist-refresh")
        if setting.subscription_auto_update_mode in (AutoUpdateMode.ON_EVERY_START, AutoUpdateMode.AT_FIXED_INTERVALS):
            self._spawn(self.refresh_subscriptions(), "subscription-refresh")

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ============ 配置 ============

    @staticmethod
    def _rule_list_enabled(setting: Setting) -> bool:
        return (
            setting.gfwlist_auto_update_mode in (AutoUpdateMode.ON_EVERY_START, AutoUpdateMode.AT_FIXED_INTERVALS)
            or setting.transparent == TransparentMode.GFWLIST
        )

    @staticmethod
    def _period_for(mode: AutoUpdateMode, interval_hour: int, subject: str) -> float:
        if mode != AutoUpdateMode.AT_FIXED_INTERVALS:
            return SENTINEL_PERIOD
        if interval_hour <= 0:
            logger.warning(f"[AutoUpdate] {subject}: invalid interval {interval_hour}h, timer disabled")
            return SENTINEL_PERIOD
        return interval_hour * HOUR

    @staticmethod
    def _apply_period(timer: PeriodicTimer, period: float) -> None:
        # 周期未变时不重置，保留当前倒计时
        if timer.period != period:
            timer.reset(period)

    def configure(self, setting: Setting) -> None:
        """根据设置调整两个定时器的周期，每个定时器只在自己的周期变化时重置"""
        self._apply_period(
            self.state.gfwlist_timer,
            self._period_for(
                setting.gfwlist_auto_update_mode, setting.gfwlist_auto_update_interval_hour, "GFWList"
            ),
        )
        self._apply_period(
            self.state.subscription_timer,
            self._period_for(
                setting.subscription_auto_update_mode, setting.subscription_auto_update_interval_hour, "Subscriptions"
            ),
        )

    # ============ 刷新 ============

    async def refresh_rule_list(self) -> str:
        return await asyncio.to_thread(self.rule_list_updater.check_and_update)

    async def _refresh_rule_list_now(self) -> None:
        try:
            version = await self.refresh_rule_list()
        except ProxydError as e:
            logger.warning(f"Failed to update PAC file: {e}")
            return
        logger.info(f"Complete updating PAC file. Localtime: {version}")

    async def _tick_rule_list(self) -> None:
        try:
            await self.refresh_rule_list()
        except ProxydError as e:
            logger.info(f"[AutoUpdate] GFWList: {e}")

    async def refresh_subscriptions(self) -> List[RefreshOutcome]:
        """刷新全部 v2 订阅，单个失败不影响其他订阅"""
        subscriptions = await asyncio.to_thread(self.store.get_subscriptions_v2)

        async def update(index: int) -> None:
            await asyncio.to_thread(self.subscription_updater.update, index)

        indexes = list(range(len(subscriptions)))
        errors = await run_bounded(indexes, update, SUBSCRIPTION_CONCURRENCY)

        outcomes = []
        for index, error in zip(indexes, errors):
            address = subscriptions[index].address
            if error is not None:
                logger.info(f"[AutoUpdate] Subscriptions: Failed to update subscription -- ID: {index}, err: {error}")
            else:
                logger.info(f"[AutoUpdate] Subscriptions: Complete updating subscription -- ID: {index}, Address: {address}")
            outcomes.append(RefreshOutcome(index=index, address=address, error=error))
        return outcomes

    async def check_version(self) -> None:
        try:
            found_new, remote = await asyncio.to_thread(self.version_checker, self.current_version)
        except ProxydError as e:
            logger.debug(f"version check failed: {e}")
            return
        self.state.found_new = found_new
        self.state.remote_version = remote

    # ============ 循环 ============

    @staticmethod
    async def _timer_loop(timer: PeriodicTimer, refresh: Callable[[], Awaitable[Any]], subject: str) -> None:
        while True:
            await timer.wait()
            try:
                await refresh()
            except ProxydError as e:
                logger.warning(f"[AutoUpdate] {subject}: refresh failed: {e}")
            except Exception as e:
                logger.exception(f"[AutoUpdate] {subject}: unexpected error during refresh: {e}")

    async def _version_loop(self) -> None:
        while True:
            try:
                await self.check_version()
            except Exception as e:
                logger.exception(f"[AutoUpdate] version check crashed: {e}")
            await asyncio.sleep(VERSION_CHECK_PERIOD)
