
from slotrent.db.session import Base
from slotrent.models.user import User
from slotrent.models.listing import Listing
from slotrent.models.subscription import RecurringSubscription
from slotrent.models.reservation import Reservation
from slotrent.models.payout import PayoutAccount, Payout, PayoutReservation
from slotrent.models.commission import CommissionOverride, PlatformSettings
from slotrent.models.notification import Notification, OutboundEvent
from slotrent.models.counter import Counter
