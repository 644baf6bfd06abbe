"""
调度打分函数

ScoreFunc(task, snapshot) -> float，分数越高越优先；同分时按 Agent 名称排序。
"""

from typing import Callable, Dict, Tuple, Union

from agentsched.models import AgentSnapshot, Task

ScoreFunc = Callable[[Task, AgentSnapshot], float]
ScorerSpec = Union[str, ScoreFunc]

# 高于该优先级的任务在 priority_spread 中按分散策略放置
HIGH_PRIORITY_THRESHOLD = 100


def first_fit(task: Task, agent: AgentSnapshot) -> float:
    """所有 Agent 同分，退化为按名称的稳定顺序"""
    return 0.0


def _free_fraction_after(task: Task, agent: AgentSnapshot) -> float:
    """放置后各资源类型剩余比例的平均值"""
    requirement = task.spec.resources.reservation_amount()
    fractions = []
    for kind, need in requirement.items():
        total = agent.allocatable.quantity(kind).milli_value
        if total == 0:
            continue
        left = (agent.available - {kind: need}).quantity(kind).milli_value
        fractions.append(left / total)
    if not fractions:
        return 1.0
    return sum(fractions) / len(fractions)


def least_allocated(task: Task, agent: AgentSnapshot) -> float:
    """分散：优先剩余资源最多的 Agent"""
    return _free_fraction_after(task, agent)


def most_allocated(task: Task, agent: AgentSnapshot) -> float:
    """装箱：优先剩余资源最少的 Agent"""
    return -_free_fraction_after(task, agent)


def priority_spread(task: Task, agent: AgentSnapshot) -> float:
    """高优先级任务分散放置，其余任务装箱"""
    if task.spec.priority >= HIGH_PRIORITY_THRESHOLD:
        return least_allocated(task, agent)
    return most_allocated(task, agent)


_SCORER_REGISTRY: Dict[str, ScoreFunc] = {}


def register_scorer(name: str, scorer: ScoreFunc, *, replace: bool = False) -> None:
    """
    注册打分函数

    Args:
        name: 名称，统一转为小写
        scorer: 打分函数
        replace: 名称已存在时是否覆盖
    """
    key = name.strip().lower()
    if not key:
        raise ValueError("Scorer name must be a non-empty string.")
    if key in _SCORER_REGISTRY and not replace:
        raise ValueError(f"Scorer '{key}' already registered.")
    _SCORER_REGISTRY[key] = scorer


def unregister_scorer(name: str) -> None:
    _SCORER_REGISTRY.pop(name.strip().lower(), None)


def available_scorers() -> Tuple[str, ...]:
    return tuple(sorted(_SCORER_REGISTRY))


def create_scorer(spec: ScorerSpec) -> ScoreFunc:
    """根据名称或可调用对象得到打分函数"""
    if isinstance(spec, str):
        key = spec.strip().lower()
        try:
            return _SCORER_REGISTRY[key]
        except KeyError as exc:
            raise ValueError(
                f"Unknown scorer '{spec}'. "
                f"Available scorers: {', '.join(available_scorers()) or '<none>'}"
            ) from exc
    if callable(spec):
        return spec
    raise TypeError("Scorer must be a registered name or a callable(task, agent) -> float.")


register_scorer("first_fit", first_fit)
register_scorer("least_allocated", least_allocated)
register_scorer("most_allocated", most_allocated)
register_scorer("priority_spread", priority_spread)


__all__ = [
    "ScoreFunc",
    "first_fit",
    "least_allocated",
    "most_allocated",
    "priority_spread",
    "register_scorer",
    "unregister_scorer",
    "available_scorers",
    "create_scorer",
]
