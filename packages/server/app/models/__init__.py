# SQLModel definitions - imported here to ensure metadata is populated for Alembic.
from .base import UUIDMixin  # noqa: F401
from .credential import Credential  # noqa: F401
from .profile import Profile  # noqa: F401
from .membership import Membership  # noqa: F401
from .role_grant import RoleGrant  # noqa: F401
