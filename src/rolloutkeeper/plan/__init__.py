from rolloutkeeper.plan.model import (
    GateSpec,
    ReadinessCheck,
    RolloutPlan,
    RoutingEndpointSpec,
    WorkloadGroupSpec,
)
from rolloutkeeper.plan.validate import load_plan, plan_from_dict, validate_plan

__all__ = [
    "GateSpec",
    "ReadinessCheck",
    "RolloutPlan",
    "RoutingEndpointSpec",
    "WorkloadGroupSpec",
    "load_plan",
    "plan_from_dict",
    "validate_plan",
]
