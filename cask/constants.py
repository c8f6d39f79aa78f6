# Pickle framing
SIZE_PICKLE_SIZE = 4        # payload length of the leading size pickle
PRELUDE_SIZE = 16           # four little-endian u32 values
ALIGNMENT = 4

U32_MAX = 0xFFFFFFFF

# Offsets are stored as decimal strings; consumers parse them into doubles,
# so anything past 2**53 - 1 can no longer be represented exactly.
MAX_SAFE_OFFSET = 2**53 - 1

# Paths are rejected beyond this many UTF-8 bytes
MAX_PATH_BYTES = 4096


# Encryption
ALGORITHM_AES_256_GCM = "aes-256-gcm"
KDF_SCRYPT = "scrypt"
KDF_ARGON2ID = "argon2id"

KEY_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16

DEFAULT_SALT = b"cask-assets-v1"

SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1

ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
ARGON_PARALLELISM = 4

CONTAINER_VERSION = 2

# Build passphrase
ENV_ASSET_KEY = "CASK_ASSET_KEY"

DEFAULT_JOBS = 4
