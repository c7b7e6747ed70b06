from nubstudio.repositories.users import UserRepository, normalize_email
from nubstudio.repositories.sessions import SessionRepository
from nubstudio.repositories.codes import RecoveryCodeRepository, VerificationCodeRepository
from nubstudio.repositories.login_history import LoginHistoryRepository
