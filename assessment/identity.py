import hashlib
from assessment.models import Question

# ASCII unit separator, never typed into prompts or options
KEY_DELIMITER = "\x1f"
KEY_LENGTH = 16


def derive_key(question: Question) -> str:
    """
    Content fingerprint of a question: prompt and options in order.

    The key, not the array index, ties a question to its recall history, so an
    edited question starts a fresh record while a reshuffled one keeps its own.
    """
    content = KEY_DELIMITER.join([question.text, *question.options])
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:KEY_LENGTH]
