"""
Centralized patterns used by the credential-capture heuristics.

Every regex, field name and reserved path that the injected browser script
relies on is defined here. When a target site changes how it stores its session
or lays out its URLs, this is the first file to update.

Patterns are written in the common subset of Python and JavaScript regex
syntax, because they are serialized into the injected script as-is.
"""

# ── Auth-related request URLs ─────────────────────────────────────────
# JSON responses from URLs matching this are scanned for credential fields.

AUTH_PATH_PATTERN = r"(login|logout|token|oauth|session|refresh|auth|signin|sign-in|sign_in)"

# ── Credential field names ────────────────────────────────────────────
# Keys inside JSON bodies / stored JSON blobs whose string values are taken
# as candidates directly. Compared case-insensitively.

CREDENTIAL_FIELDS = [
    "access_token",
    "accessToken",
    "token",
    "jwt",
    "id_token",
    "idToken",
    "sessionToken",
    "session_token",
    "auth_token",
    "authToken",
    "bearer",
]

# ── Storage / cookie key names ────────────────────────────────────────
# localStorage, sessionStorage and cookie names that look credential-bearing.

STORAGE_KEY_PATTERN = r"(token|auth|session|jwt|bearer|access|refresh)"

# JWTs are base64url JSON headers, so they always start with "eyJ" ({")
JWT_PREFIX = "eyJ"
JWT_MIN_LENGTH = 50

# ── Identifier recovery ───────────────────────────────────────────────
# Paths where no identifier should be looked for (the user is not signed in yet).

LOGIN_PATH_PATTERN = r"^/(login|signin|sign-in|signup|sign-up|register|join|auth|oauth|password|reset)(/|$)"

# Shape of a personal profile path: a single segment like "/alice/" or "/alice"
PROFILE_PATH_PATTERN = r"^/([A-Za-z0-9][A-Za-z0-9._-]{1,39})/?$"

# Keys holding the user's identifier in hydration data / global state
IDENTIFIER_FIELDS = ["username", "userName", "user_name", "slug"]

# How deep to recurse into hydration / global state objects
MAX_SCAN_DEPTH = 8

# Framework hydration object (Next.js); also readable from <script id="__NEXT_DATA__">
HYDRATION_GLOBAL = "__NEXT_DATA__"

# Other well-known global state containers, tried last
STATE_GLOBALS = [
    "__INITIAL_STATE__",
    "__PRELOADED_STATE__",
    "__APOLLO_STATE__",
    "__NUXT__",
    "__APP_STATE__",
]

# Links in navigation chrome that usually point at the signed-in user's profile.
# Tried in order; the generic nav/header link selectors come last.
PROFILE_LINK_SELECTORS = [
    'a[data-testid*="profile" i]',
    'a[aria-label*="profile" i]',
    'a[href][data-testid*="account" i]',
    "nav a[href]",
    "header a[href]",
]

# First path segments that are site sections, never usernames
RESERVED_PATHS = [
    "about", "account", "api", "app", "auth", "basket", "blog", "brands",
    "cart", "category", "checkout", "contact", "discover", "explore", "favicon.ico",
    "feed", "help", "home", "join", "legal", "likes", "login", "logout", "messages",
    "news", "notifications", "oauth", "orders", "password", "policy", "pricing",
    "privacy", "products", "purchases", "register", "reset", "robots.txt", "sales",
    "saved", "search", "sell", "selling", "settings", "shop", "signin", "signup",
    "sitemap", "static", "support", "terms", "_next",
]
