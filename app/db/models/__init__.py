from .common import *  # noqa
from .master import *  # noqa
from .inventory import *  # noqa
from .transfer import *  # noqa
from .sales import *  # noqa
from .billing import *  # noqa
from .security_audit import *  # noqa

# Platform event-bus table (transactional outbox)
from app.events.outbox import OutboxEvent  # noqa
