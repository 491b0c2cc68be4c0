"""Central model registry: import all models so Alembic autodiscover works."""

from approval_engine.database import Base  # noqa: F401

from approval_engine.models.user import User  # noqa: F401
from approval_engine.models.approval_chain import (  # noqa: F401
    ApprovalChainModel,
    ApprovalChainLevelModel,
)
from approval_engine.models.approval_request import (  # noqa: F401
    ApprovalRequestModel,
    ApprovalStepModel,
)
