"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .generation_lock import GenerationLock
from .generated_asset import GeneratedAsset
from .user_referral import UserReferral
from .social_share import SocialShare
