"""
资源模型单元测试

测试：
1. 数量字符串解析与规范化输出
2. 截断减法永不为负
3. 资源集合的 fits / exceeding_kinds / clamp_to
4. requests / limits 合并出预留量
5. 规格校验
"""

from __future__ import annotations

import pytest

from agentsched.errors import ValidationError
from agentsched.models import ResourceQuantity, ResourceRequirements, ResourceSet, Task, TaskSpec
from agentsched.models.task import Dependency, RetryPolicy

from tests.helpers import make_task


@pytest.mark.parametrize(
    "text, milli",
    [
        ("500m", 500),
        ("2", 2000),
        ("1.5", 1500),
        ("1k", 1_000_000),
        ("128M", 128_000_000_000),
        ("512Mi", 512 * 2 ** 20 * 1000),
        ("1Gi", 2 ** 30 * 1000),
        ("0.0001", 1),
    ],
)
def test_parse_quantity(text, milli):
    """测试 Kubernetes 风格数量解析（不足 1m 向上取整）"""
    assert ResourceQuantity(text).milli_value == milli


def test_quantity_from_numbers():
    assert ResourceQuantity(2).milli_value == 2000
    assert ResourceQuantity(0.25).milli_value == 250


@pytest.mark.parametrize("text", ["", "abc", "-1", "1Qi", "1.2.3"])
def test_invalid_quantity(text):
    with pytest.raises(ValueError):
        ResourceQuantity(text)


def test_canonical_string():
    """测试规范化输出"""
    assert str(ResourceQuantity("1000m")) == "1"
    assert str(ResourceQuantity("500m")) == "500m"
    assert str(ResourceQuantity("512Mi")) == "512Mi"
    assert str(ResourceQuantity("2048Mi")) == "2Gi"
    assert str(ResourceQuantity("1.5")) == "1500m"


def test_quantity_subtraction_clamps_at_zero():
    """测试截断减法"""
    assert (ResourceQuantity("1") - ResourceQuantity("300m")).milli_value == 700
    assert (ResourceQuantity("300m") - ResourceQuantity("1")).milli_value == 0


def test_quantity_ordering():
    assert ResourceQuantity("500m") < ResourceQuantity("1")
    assert ResourceQuantity("1Gi") > ResourceQuantity("1G")
    assert ResourceQuantity("1000m") == "1"


def test_resource_set_missing_kind_is_zero():
    resources = ResourceSet(cpu="1")
    assert resources.quantity("memory").milli_value == 0
    assert resources == {"cpu": "1000m", "memory": "0"}


def test_resource_set_arithmetic():
    """测试按类型逐项加减"""
    a = ResourceSet(cpu="1", memory="512Mi")
    b = ResourceSet(cpu="600m", gpu="1")

    assert a + b == {"cpu": "1600m", "memory": "512Mi", "gpu": "1"}
    assert a - b == {"cpu": "400m", "memory": "512Mi", "gpu": "0"}
    assert b - a == {"cpu": "0", "gpu": "1"}


def test_resource_set_fits():
    available = ResourceSet(cpu="1", memory="512Mi")
    assert available.fits({"cpu": "500m", "memory": "128Mi"})
    assert available.fits({})
    assert not available.fits({"cpu": "1100m"})
    assert not available.fits({"gpu": "1"})


def test_exceeding_kinds_and_clamp():
    reserved = ResourceSet(cpu="2", memory="1Gi")
    limit = ResourceSet(cpu="1", memory="2Gi")

    assert reserved.exceeding_kinds(limit) == ["cpu"]
    assert reserved.clamp_to(limit) == {"cpu": "1", "memory": "1Gi"}


def test_resource_set_serializes_as_strings():
    """测试资源集合在 pydantic 模型中序列化为字符串字典"""
    task = make_task("t", limits={"cpu": "1000m", "memory": "128Mi"})
    dumped = task.model_dump(mode="json")
    assert dumped["spec"]["resources"]["limits"] == {"cpu": "1", "memory": "128Mi"}

    restored = Task.model_validate_json(task.model_dump_json())
    assert restored.spec.resources.limits == task.spec.resources.limits


def test_reservation_amount_prefers_limits():
    """测试预留量按 limits 计算，缺失时使用 requests"""
    resources = ResourceRequirements(
        requests={"cpu": "250m", "memory": "64Mi"},
        limits={"cpu": "500m"},
    )
    assert resources.reservation_amount() == {"cpu": "500m", "memory": "64Mi"}


def test_validate_spec_accepts_well_formed_task():
    task = make_task("ok", limits={"cpu": "1"}, depends_on=["other"])
    task.spec.validate_spec(task.key)


@pytest.mark.parametrize(
    "spec, fragment",
    [
        (TaskSpec(image_ref=""), "imageRef"),
        (TaskSpec(image_ref="img", retry_policy=RetryPolicy(limit=-1)), "retryPolicy"),
        (TaskSpec(image_ref="img", timeout_seconds=0), "timeout"),
        (
            TaskSpec(
                image_ref="img",
                resources=ResourceRequirements(requests={"cpu": "2"}, limits={"cpu": "1"}),
            ),
            "requests exceed limits",
        ),
        (TaskSpec(image_ref="img", dependencies=[Dependency(task_id="default/me")]), "itself"),
        (TaskSpec(image_ref="img", dependencies=[Dependency(task_id="me")]), "itself"),
    ],
)
def test_validate_spec_rejects(spec, fragment):
    """测试非法规格"""
    with pytest.raises(ValidationError) as exc_info:
        spec.validate_spec("default/me")
    assert fragment in str(exc_info.value)


def test_dependency_in_other_namespace_is_not_self():
    spec = TaskSpec(image_ref="img", dependencies=[Dependency(task_id="other/me")])
    spec.validate_spec("default/me")
