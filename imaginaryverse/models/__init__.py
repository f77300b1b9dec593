from imaginaryverse.models.user import User
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.subscription import UserSubscription
from imaginaryverse.models.payment_record import PaymentRecord
