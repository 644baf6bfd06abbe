"""
Agent 模型
定义 Agent 观测数据、账本记录和只读快照
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .resource import ResourceSet


class AgentObservation(BaseModel):
    """
    外部 Agent 源上报的一条 Agent 观测

    ready 为 False 的 Agent 不贡献任何容量，resync 时会被移出账本
    """

    name: str = Field(..., description="Agent 唯一名称")
    ready: bool = Field(default=False, description="是否处于 Ready 状态")
    allocatable: ResourceSet = Field(default_factory=ResourceSet, description="可分配资源总量")
    labels: Dict[str, str] = Field(default_factory=dict, description="标签")
    last_heartbeat: Optional[datetime] = Field(default=None, description="最后心跳时间")


class AgentPage(BaseModel):
    """Agent 源的一页结果"""

    items: List[AgentObservation] = Field(default_factory=list)
    continue_token: Optional[str] = Field(default=None, description="下一页游标，None 表示已到末页")


@dataclass
class AgentCapacityRecord:
    """
    账本中的单个 Agent 记录

    仅由 ResourceLedger 持有和修改，不变式：每类资源 reserved <= allocatable
    """

    allocatable: ResourceSet
    reserved: ResourceSet = field(default_factory=ResourceSet)
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def available(self) -> ResourceSet:
        return self.allocatable - self.reserved


class AgentSnapshot(BaseModel):
    """账本记录的只读副本，返回给调用方"""

    model_config = ConfigDict(frozen=True)

    name: str
    allocatable: ResourceSet
    reserved: ResourceSet
    last_seen: Optional[datetime] = None
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def available(self) -> ResourceSet:
        """剩余可预留资源"""
        return self.allocatable - self.reserved

    @classmethod
    def from_record(cls, name: str, record: AgentCapacityRecord) -> "AgentSnapshot":
        return cls(
            name=name,
            allocatable=record.allocatable,
            reserved=record.reserved,
            last_seen=record.last_seen,
            labels=dict(record.labels),
        )
