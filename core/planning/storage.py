"""
Plan 持久化

每个 Plan 一个 JSON 文件（<plan_id>.json），进程内保留一份缓存。
依赖图和约束验证器属于运行期对象，不写入文件；重新加载后约束只剩描述。

    storage = PlanStorage("data/plans")
    await storage.initialize()          # 读入目录中已有的 Plan

    await storage.save(plan)
    plan = await storage.load(plan_id)
    failed = await storage.list_plans(status=PlanStatus.FAILED)
"""

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Union

import aiofiles

from core.planning.errors import PlanNotFoundError
from core.planning.protocol import Plan, PlanStatus
from logger import get_logger
from utils.app_paths import get_plans_dir

logger = get_logger(__name__)

_FINISHED = (PlanStatus.COMPLETED, PlanStatus.FAILED)


class PlanStorage:
    """JSON 文件 + 内存缓存"""

    def __init__(self, storage_path: Union[str, Path] = "", retention_days: int = 30):
        """
        Args:
            storage_path: 存储目录，为空时使用用户数据目录下的 data/plans
            retention_days: cleanup_old_plans 保留已结束 Plan 的天数
        """
        self.storage_path = Path(storage_path) if storage_path else get_plans_dir()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.retention_days = retention_days

        self._plans: Dict[str, Plan] = {}
        self._loaded = False

    async def initialize(self) -> None:
        """把目录中的 Plan 读入缓存（只执行一次，损坏的文件记录后跳过）"""
        if self._loaded:
            return

        paths = await asyncio.to_thread(sorted, self.storage_path.glob("*.json"))
        for path in paths:
            try:
                plan = await self._read(path)
            except (OSError, ValueError) as e:
                logger.error(f"❌ 无法读取 Plan 文件 {path.name}: {e}")
                continue
            self._plans[plan.id] = plan

        self._loaded = True
        logger.info(f"📂 已载入 {len(self._plans)} 个 Plan: {self.storage_path}")

    async def save(self, plan: Plan) -> None:
        self._plans[plan.id] = plan
        await self._write(plan)
        logger.debug(f"💾 Plan 已保存: {plan.id}")

    async def update(self, plan: Plan) -> None:
        """刷新 updated_at 后保存"""
        plan.touch()
        await self.save(plan)

    async def get(self, plan_id: str) -> Optional[Plan]:
        """只查缓存"""
        return self._plans.get(plan_id)

    async def load(self, plan_id: str) -> Plan:
        """
        缓存未命中时读文件

        Raises:
            PlanNotFoundError: 缓存和目录中都没有该 Plan
        """
        if plan_id in self._plans:
            return self._plans[plan_id]

        path = self._path_for(plan_id)
        if not path.exists():
            raise PlanNotFoundError(plan_id)

        plan = self._plans[plan_id] = await self._read(path)
        return plan

    async def delete(self, plan_id: str) -> bool:
        """删除缓存和文件，二者都不存在时返回 False"""
        cached = self._plans.pop(plan_id, None) is not None
        path = self._path_for(plan_id)
        on_disk = path.exists()
        if on_disk:
            path.unlink()

        if cached or on_disk:
            logger.debug(f"🗑️ Plan 已删除: {plan_id}")
            return True
        return False

    async def list_plans(self, status: Optional[PlanStatus] = None, limit: Optional[int] = None) -> List[Plan]:
        """按创建时间从新到旧"""
        plans = sorted(
            (p for p in self._plans.values() if status is None or p.status == status),
            key=lambda p: p.created_at,
            reverse=True,
        )
        return plans if limit is None else plans[:limit]

    async def get_active_plans(self) -> List[Plan]:
        """尚未结束的 Plan"""
        return [p for p in await self.list_plans() if p.status not in _FINISHED]

    def get_statistics(self) -> Dict:
        plans = self._plans.values()
        counts = {status.value: 0 for status in PlanStatus}
        for plan in plans:
            counts[plan.status.value] += 1
        return {
            "total_plans": len(self._plans),
            "total_steps": sum(p.total_steps for p in plans),
            "by_status": counts,
        }

    async def cleanup_old_plans(self) -> int:
        """删除 updated_at 早于保留期的已结束 Plan，返回删除数量"""
        cutoff = datetime.now() - timedelta(days=self.retention_days)
        expired = [
            plan_id
            for plan_id, plan in self._plans.items()
            if plan.status in _FINISHED and plan.updated_at < cutoff
        ]
        for plan_id in expired:
            await self.delete(plan_id)

        if expired:
            logger.info(f"🧹 已清理 {len(expired)} 个过期 Plan（保留 {self.retention_days} 天）")
        return len(expired)

    def _path_for(self, plan_id: str) -> Path:
        return self.storage_path / f"{plan_id}.json"

    async def _write(self, plan: Plan) -> None:
        # 先写临时文件再替换，避免留下半个 JSON
        path = self._path_for(plan.id)
        tmp_path = path.with_suffix(".json.tmp")
        payload = json.dumps(plan.model_dump(mode="json"), ensure_ascii=False, indent=2)

        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        tmp_path.replace(path)

    @staticmethod
    async def _read(path: Path) -> Plan:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return Plan.model_validate(json.loads(await f.read()))
