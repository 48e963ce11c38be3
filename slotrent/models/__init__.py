from slotrent.models.user import User, UserRole
from slotrent.models.listing import Listing
from slotrent.models.subscription import RecurringSubscription, RecurrenceInterval, SubscriptionStatus
from slotrent.models.reservation import Reservation, ReservationStatus, PaymentStatus, PayoutStatus
from slotrent.models.payout import PayoutAccount, Payout, PayoutReservation, PayoutRecordStatus
from slotrent.models.commission import CommissionOverride, PlatformSettings
from slotrent.models.notification import Notification, OutboundEvent, EventStatus
from slotrent.models.counter import Counter
