# Importing the domain models registers their tables on Base.metadata.
from secure_booking.domain.bookings import db_models as booking_db_models  # noqa: F401
from secure_booking.domain.confirmations import db_models as confirmation_db_models  # noqa: F401
from secure_booking.domain.holds import db_models as hold_db_models  # noqa: F401
from secure_booking.domain.ops import db_models as ops_db_models  # noqa: F401
from secure_booking.domain.penalties import db_models as penalty_db_models  # noqa: F401
from secure_booking.domain.policies import db_models as policy_db_models  # noqa: F401
from secure_booking.domain.trust import db_models as trust_db_models  # noqa: F401
