# Gym access-control integration: database models
# Import all models here for SQLAlchemy discovery

from app.models.credential import ProviderCredential      # noqa
from app.models.device import Device, Door                # noqa
from app.models.person import Person, AccessPrivilege     # noqa
from app.models.access_event import AccessEvent           # noqa
from app.models.event_offset import EventOffset           # noqa
from app.models.sync_log import SyncLog                   # noqa
from app.models.attendance import MemberAttendance        # noqa
