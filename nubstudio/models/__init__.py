from nubstudio.models.user import User, AccountStatus, TwoFactorMethod
from nubstudio.models.session import ActiveSession
from nubstudio.models.recovery_code import RecoveryCode
from nubstudio.models.verification_code import VerificationCode, CodePurpose
from nubstudio.models.login_history import LoginHistory, LoginKind
