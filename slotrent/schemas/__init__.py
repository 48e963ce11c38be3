from slotrent.schemas.common import ApiResponse, PaginatedResponse, ErrorResponse
from slotrent.schemas.user import User, UserUpdate
from slotrent.schemas.listing import Listing, ListingCreate, ListingUpdate
from slotrent.schemas.availability import (
    Slot, DayAvailability, AvailabilityCheck, RecurringConflict, RecurringConflictReport,
)
from slotrent.schemas.reservation import (
    Reservation, ReservationCreate, ReservationReschedule, ReservationStatusUpdate,
    ReservationCancel, ReservationPayment, RefundEligibility,
)
from slotrent.schemas.subscription import Subscription, SubscriptionCreate, SubscriptionCancel
from slotrent.schemas.payout import (
    PayoutAccount, PayoutAccountRefresh, Balance, Payout, Earnings, SweepResult, DailySummary,
)
from slotrent.schemas.commission import (
    CommissionRateUpdate, CommissionOverride, EffectiveCommission, PlatformRules, PlatformRulesUpdate,
)
from slotrent.schemas.notification import Notification
