from .challenge import (
    ChallengeContext,
    ChallengeResolver,
    CheckpointResolver,
    WebAutomation,
)
from .cipher import decode_envelope, encrypt_password
from .classifier import Response, ResponseClassifier
from .client import BootstrapTask, Client
from .config import ClientConfig, load_config
from .device import GALAXY_S10, DeviceIdentity, DeviceProfile
from .errors import (
    ApiError,
    AppError,
    AutomationError,
    ChallengeRequiredError,
    ChallengeResolutionError,
    CheckpointPassedError,
    CheckpointRequiredError,
    CipherError,
    ConfigError,
    ErrorKind,
    GenericAPIError,
    InvalidCredentialsError,
    LoggedOutError,
    LoginRequiredError,
    SessionError,
    TooManyRequestsError,
    TransientServerError,
    TransportError,
    TwoFactorNoCodeError,
    TwoFactorRequiredError,
)
from .recovery import (
    DefaultRecoveryPolicy,
    RecoveryAttempt,
    RecoveryPolicy,
)
from .request import ApiVariant, RequestSigner, RequestSpec
from .session import SessionState
from .totp import generate_hotp, generate_totp
from .transport import AiohttpTransport, RawResponse, Transport
from .twofactor import TwoFactorContext, TwoFactorResolver

__version__ = '0.1.0'
