from __future__ import annotations

CHANNEL_KEYS: tuple[str, ...] = (
    "lsf",
    "f0",
    "energy",
    "duration",
)

AUDIO_FILE_EXTENSIONS: tuple[str, ...] = (
    ".wav",
    ".flac",
    ".aif",
    ".aiff",
    ".ogg",
)

SILENCE_LABELS: frozenset[str] = frozenset({"_", "#", "pau", "sil", "sp", "h#", "silence"})

VOWEL_LABELS: frozenset[str] = frozenset(
    {
        "a", "e", "i", "o", "u", "y", "@", "{", "A", "E", "I", "O", "U", "V", "Q", "Y", "2", "6", "9",
        "aa", "ae", "ah", "ao", "aw", "ax", "ay", "eh", "er", "ey", "ih", "iy", "ow", "oy", "uh", "uw",
        "aI", "aU", "OY", "EI", "@U", "a:", "e:", "i:", "o:", "u:", "y:", "E:", "2:",
    }
)

CATEGORY_SILENCE = 0
CATEGORY_VOWEL = 1
CATEGORY_CONSONANT = 2
CATEGORY_NONE = -1

NO_MATCH = -1

EPSILON = 1.0e-8
DEFAULT_CODEBOOK_EXTENSION = ".wcf"
DEFAULT_PITCH_MAPPING_EXTENSION = ".pmf"
DEFAULT_LABEL_EXTENSION = ".lab"

CODEBOOK_MAGIC = b"WCBK"
PITCH_MAPPING_MAGIC = b"WPMF"
FORMAT_VERSION = 1
