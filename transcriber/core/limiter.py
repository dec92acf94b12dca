from slowapi import Limiter
from slowapi.util import get_remote_address

# Submissions are keyed by client address; each batch fans out to the model
limiter = Limiter(key_func=get_remote_address)
