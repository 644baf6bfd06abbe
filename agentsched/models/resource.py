"""
资源模型
定义资源数量、资源集合以及任务的资源需求（requests / limits）
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from functools import total_ordering
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from pydantic import BaseModel, Field
from pydantic_core import core_schema

CPU = "cpu"
MEMORY = "memory"
GPU = "gpu"

_BINARY_SUFFIXES = {
    "Ki": 2 ** 10,
    "Mi": 2 ** 20,
    "Gi": 2 ** 30,
    "Ti": 2 ** 40,
    "Pi": 2 ** 50,
    "Ei": 2 ** 60,
}

_DECIMAL_SUFFIXES = {
    "m": Decimal("0.001"),
    "": Decimal(1),
    "k": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
    "P": Decimal(10) ** 15,
    "E": Decimal(10) ** 18,
}

_QUANTITY_RE = re.compile(r"^\+?([0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)([a-zA-Z]*)$")

QuantityLike = Union["ResourceQuantity", str, int, float, Decimal]


@total_ordering
class ResourceQuantity:
    """
    资源数量

    内部以整数 milli 单位保存，保证加减比较都是精确的。
    支持 Kubernetes 风格的字符串：500m、2、1.5、512Mi、1Gi、128M。
    减法在零处截断，结果永远不为负数。
    """

    __slots__ = ("_milli",)

    def __init__(self, value: QuantityLike = 0):
        if isinstance(value, ResourceQuantity):
            self._milli = value._milli
        elif isinstance(value, str):
            self._milli = self._parse_milli(value)
        elif isinstance(value, bool):
            raise ValueError(f"Invalid resource quantity: {value!r}")
        elif isinstance(value, (int, float, Decimal)):
            self._milli = self._to_milli(Decimal(str(value)), str(value))
        else:
            raise ValueError(f"Invalid resource quantity: {value!r}")

    @classmethod
    def from_milli(cls, milli: int) -> "ResourceQuantity":
        quantity = cls()
        quantity._milli = max(0, int(milli))
        return quantity

    @classmethod
    def parse(cls, text: str) -> "ResourceQuantity":
        return cls(text)

    @staticmethod
    def _parse_milli(text: str) -> int:
        match = _QUANTITY_RE.match(text.strip())
        if not match:
            raise ValueError(f"Invalid resource quantity: {text!r}")
        number, suffix = match.groups()
        try:
            amount = Decimal(number)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid resource quantity: {text!r}") from exc

        if suffix in _BINARY_SUFFIXES:
            amount *= _BINARY_SUFFIXES[suffix]
        elif suffix in _DECIMAL_SUFFIXES:
            amount *= _DECIMAL_SUFFIXES[suffix]
        else:
            raise ValueError(f"Unknown quantity suffix {suffix!r} in {text!r}")
        return ResourceQuantity._to_milli(amount, text)

    @staticmethod
    def _to_milli(amount: Decimal, raw: str) -> int:
        if amount < 0:
            raise ValueError(f"Resource quantity must be non-negative: {raw!r}")
        # 与 Kubernetes 一致，不足 1m 的部分向上取整
        return int((amount * 1000).to_integral_value(rounding=ROUND_CEILING))

    # =========================================================================
    # 取值
    # =========================================================================

    @property
    def milli_value(self) -> int:
        return self._milli

    @property
    def value(self) -> Decimal:
        return Decimal(self._milli) / 1000

    def __float__(self) -> float:
        return self._milli / 1000

    def __bool__(self) -> bool:
        return self._milli != 0

    # =========================================================================
    # 运算
    # =========================================================================

    def __add__(self, other: QuantityLike) -> "ResourceQuantity":
        return ResourceQuantity.from_milli(self._milli + _coerce(other)._milli)

    def __sub__(self, other: QuantityLike) -> "ResourceQuantity":
        return ResourceQuantity.from_milli(max(0, self._milli - _coerce(other)._milli))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResourceQuantity):
            return self._milli == other._milli
        if isinstance(other, (str, int, float, Decimal)) and not isinstance(other, bool):
            try:
                return self._milli == ResourceQuantity(other)._milli
            except ValueError:
                return False
        return NotImplemented

    def __lt__(self, other: QuantityLike) -> bool:
        return self._milli < _coerce(other)._milli

    def __hash__(self) -> int:
        return hash(self._milli)

    def __deepcopy__(self, memo: Dict) -> "ResourceQuantity":
        return self

    def __str__(self) -> str:
        milli = self._milli
        if milli % 1000:
            return f"{milli}m"
        units = milli // 1000
        for suffix in ("Ti", "Gi", "Mi"):
            factor = _BINARY_SUFFIXES[suffix]
            if units >= factor and units % factor == 0:
                return f"{units // factor}{suffix}"
        return str(units)

    def __repr__(self) -> str:
        return f"ResourceQuantity('{self}')"

    # =========================================================================
    # pydantic 集成
    # =========================================================================

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls,
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, schema: Any, handler: Any) -> Dict[str, Any]:
        return {"type": "string", "examples": ["500m", "2", "512Mi"]}


ZERO = ResourceQuantity.from_milli(0)


def _coerce(value: QuantityLike) -> ResourceQuantity:
    if isinstance(value, ResourceQuantity):
        return value
    return ResourceQuantity(value)


class ResourceSet(Mapping[str, ResourceQuantity]):
    """
    资源集合：资源类型 -> 资源数量

    不可变。所有运算按资源类型逐项进行，缺失的类型视为 0。
    """

    __slots__ = ("_items",)

    def __init__(self, items: Optional[Mapping[str, QuantityLike]] = None, **kwargs: QuantityLike):
        merged: Dict[str, ResourceQuantity] = {}
        for source in (items or {}, kwargs):
            for kind, value in source.items():
                merged[str(kind)] = _coerce(value)
        self._items = merged

    def __getitem__(self, kind: str) -> ResourceQuantity:
        return self._items[kind]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def quantity(self, kind: str) -> ResourceQuantity:
        """获取某类资源数量，缺失时为 0"""
        return self._items.get(kind, ZERO)

    def __add__(self, other: Mapping[str, QuantityLike]) -> "ResourceSet":
        result = dict(self._items)
        for kind, value in other.items():
            result[kind] = result.get(kind, ZERO) + value
        return ResourceSet(result)

    def __sub__(self, other: Mapping[str, QuantityLike]) -> "ResourceSet":
        """逐项相减，结果在 0 处截断"""
        result = dict(self._items)
        for kind, value in other.items():
            result[kind] = result.get(kind, ZERO) - value
        return ResourceSet(result)

    def fits(self, required: Mapping[str, QuantityLike]) -> bool:
        """required 中每一类资源都不超过本集合"""
        return all(_coerce(value) <= self.quantity(kind) for kind, value in required.items())

    def exceeding_kinds(self, limit: Mapping[str, QuantityLike]) -> List[str]:
        """返回本集合中超过 limit 的资源类型"""
        limit_set = limit if isinstance(limit, ResourceSet) else ResourceSet(limit)
        return sorted(kind for kind, value in self._items.items() if value > limit_set.quantity(kind))

    def clamp_to(self, limit: Mapping[str, QuantityLike]) -> "ResourceSet":
        """逐项取 min(self, limit)"""
        limit_set = limit if isinstance(limit, ResourceSet) else ResourceSet(limit)
        return ResourceSet({
            kind: min(value, limit_set.quantity(kind))
            for kind, value in self._items.items()
        })

    @property
    def is_zero(self) -> bool:
        return not any(self._items.values())

    def to_dict(self) -> Dict[str, str]:
        return {kind: str(value) for kind, value in self._items.items()}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Mapping):
            return NotImplemented
        other_set = other if isinstance(other, ResourceSet) else ResourceSet(other)
        kinds = set(self._items) | set(other_set)
        return all(self.quantity(k) == other_set.quantity(k) for k in kinds)

    __hash__ = None  # type: ignore[assignment]

    def __deepcopy__(self, memo: Dict) -> "ResourceSet":
        # 不可变，复制时共享同一实例
        return self

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v}" for k, v in sorted(self._items.items()))
        return f"ResourceSet({inner})"

    @classmethod
    def _validate(cls, value: Any) -> "ResourceSet":
        if isinstance(value, ResourceSet):
            return value
        if isinstance(value, Mapping):
            return cls(value)
        raise ValueError(f"Resource set must be a mapping, got {type(value).__name__}")

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(lambda v: v.to_dict()),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, schema: Any, handler: Any) -> Dict[str, Any]:
        return {
            "type": "object",
            "additionalProperties": {"type": "string"},
            "examples": [{"cpu": "500m", "memory": "128Mi"}],
        }


class ResourceRequirements(BaseModel):
    """
    任务资源需求

    调度与预留按 limits 计算；未设置 limit 的资源类型使用其 request。
    """

    requests: ResourceSet = Field(default_factory=ResourceSet, description="请求量")
    limits: ResourceSet = Field(default_factory=ResourceSet, description="上限，调度按此预留")

    def reservation_amount(self) -> ResourceSet:
        """计算需要在 Agent 上预留的资源"""
        merged = dict(self.requests)
        merged.update(self.limits)
        return ResourceSet(merged)

    def requests_over_limits(self) -> List[str]:
        """返回 request 大于 limit 的资源类型"""
        bounded = {kind: self.requests[kind] for kind in self.requests if kind in self.limits}
        return ResourceSet(bounded).exceeding_kinds(self.limits)
