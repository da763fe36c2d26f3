"""Models package."""

from .user import User
from .oauth_account import OAuthAccount
from .profile import Profile
from .resume import Resume
from .credit_transaction import CreditTransaction
from .credit_package import CreditPackage
from .payment import Payment
