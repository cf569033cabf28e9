"""Protocol constants for the Instagram private API."""

# ============================================
#  HOSTS
# ============================================

BASE_URL = 'https://i.instagram.com/'
API_URL = 'https://i.instagram.com/api/v1/'
API_URL_B = 'https://b.i.instagram.com/api/v1/'
API_URL_V2 = 'https://i.instagram.com/api/v2/'
API_URL_V2_B = 'https://b.i.instagram.com/api/v2/'

# ============================================
#  APP IDENTITY
# ============================================

APP_VERSION = '195.0.0.31.123'
APP_VERSION_CODE = '302733750'
BLOKS_VERSION_ID = (
    '927f06374b80864ae6a0b04757048065'
    '714dc50ff15d2b8b3de8d0b6de961649')
FB_ANALYTICS_APP_ID = '567067343352427'
IG_CAPABILITIES = '3brTvx0='
CONNECTION_TYPE = 'WIFI'
LOCALE = 'en_US'

# Password envelope
PWD_ENVELOPE_PREFIX = '#PWD_INSTAGRAM'
PWD_ENVELOPE_VERSION = 4
PWD_PAYLOAD_VERSION = 1

# Signed body convention, accepted unsigned by
# the server.
SIGNED_BODY_PREFIX = 'SIGNATURE.'

# Seed appended when deriving the device id
DEVICE_ID_SEED = '12345'

# ============================================
#  ENDPOINTS
# ============================================

URL_ZR_TOKEN = 'zr/token/result/'
URL_SYNC = 'launcher/sync/'
URL_GET_PREFILL = 'accounts/get_prefill_candidates/'
URL_CONTACT_PREFILL = 'accounts/contact_point_prefill/'
URL_LOGIN = 'accounts/login/'
URL_LOGOUT = 'accounts/logout/'
URL_2FA_LOGIN = 'accounts/two_factor_login/'
URL_2FA_CHECK_TRUSTED = (
    'two_factor/check_trusted_notification_status/')

# Post-login bootstrap
URL_ACCOUNT_FAMILY = 'multiple_accounts/get_account_family/'
URL_NDX_STEPS = 'devices/ndx/api/async_get_ndx_ig_steps/'
URL_TIMELINE = 'feed/timeline/'
URL_NOTIF_BADGE = 'notifications/badge/'
URL_BANYAN = 'banyan/banyan/'
URL_MEDIA_BLOCKED = 'media/blocked/'
URL_COOLDOWNS = 'qp/get_cooldowns/'
URL_DISCOVER = 'discover/topical_explore/'
URL_FETCH_CONFIG = 'loom/fetch_config/'
URL_BOOTSTRAP_SCORES = 'scores/bootstrap/users/'
URL_ACTIVITY_RECENT = 'news/inbox/'
URL_LOG_ATTRIBUTION = 'attribution/log_attribution/'
URL_PUSH_PERMISSIONS = (
    'notifications/store_client_push_permissions/')
URL_INBOX = 'direct_v2/inbox/'
URL_CONTACT_POINT_SIGNALS = (
    'accounts/process_contact_point_signals/')

# ============================================
#  HEADERS
# ============================================

AUTHORIZATION_HEADER = 'Authorization'
PUB_KEY_HEADER = 'Ig-Set-Password-Encryption-Pub-Key'
PUB_KEY_ID_HEADER = 'Ig-Set-Password-Encryption-Key-Id'

# Response header -> session header bag key
HARVESTED_HEADERS = (
    ('Ig-Set-Authorization', 'Authorization'),
    ('Ig-Set-X-Mid', 'X-Mid'),
    ('X-Ig-Set-Www-Claim', 'X-Ig-Www-Claim'),
    ('Ig-Set-Ig-U-Ig-Direct-Region-Hint',
     'Ig-U-Ig-Direct-Region-Hint'),
    ('Ig-Set-Ig-U-Shbid', 'Ig-U-Shbid'),
    ('Ig-Set-Ig-U-Shbts', 'Ig-U-Shbts'),
    ('Ig-Set-Ig-U-Rur', 'Ig-U-Rur'),
    ('Ig-Set-Ig-U-Ds-User-Id', 'Ig-U-Ds-User-Id'),
)

# Seeded into every fresh session
DEFAULT_HEADER_BAG = {
    'X-Ig-Www-Claim': '0',
}

# Telemetry headers not sent to the bare host
OMIT_API_IGNORED_HEADERS = (
    'X-Ig-Bandwidth-Speed-KBPS',
    'X-Ig-Bandwidth-TotalBytes-B',
    'X-Ig-Bandwidth-Totaltime-Ms',
)

# Token fetch is issued without session telemetry
ZR_TOKEN_IGNORED_HEADERS = (
    'X-Pigeon-Session-Id',
    'X-Pigeon-Rawclienttime',
    'X-Ig-App-Locale',
    'X-Ig-Device-Locale',
    'X-Ig-Mapped-Locale',
    'X-Ig-App-Startup-Country',
)

# ============================================
#  SERVER MESSAGES
# ============================================

MSG_LOGIN_REQUIRED = 'login_required'
MSG_LOGGED_OUT_TITLE = "You've Been Logged Out"
MSG_BAD_PASSWORD = 'bad_password'
MSG_CHECKPOINT_REQUIRED = 'checkpoint_required'
MSG_CHALLENGE_REQUIRED = 'challenge_required'
MSG_CHECKPOINT_CHALLENGE = 'checkpoint_challenge_required'
MSG_TWO_FACTOR_REQUIRED = 'two_factor_required'
MSG_INVALID_CODE = (
    'Please check the code we sent you and try again.')
MSG_TRANSCODE_PENDING = 'Transcode not finished yet.'
MSG_TRY_LATER = 'Instagram API error. Try it later.'

# ============================================
#  LIMITS
# ============================================

MAX_RECOVERY_ATTEMPTS = 3
TOO_MANY_REQUESTS_COOLDOWN = 60
TOKEN_REFRESH_MARGIN = 10
REQUEST_TIMEOUT = 30
AUTOMATION_TIMEOUT = 300
CHECKPOINT_TIMEOUT = 30
TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6

# Header values logged at most this long
LOG_HEADER_CHARS = 40
