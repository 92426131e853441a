from django.core.cache import cache

LOCK_TIMEOUT = 3600


def name(lock_key: str) -> str:
	"""
	Get a lock key including the specified string.
	"""
	return f"lock:{lock_key}"


def acquire(lock_key: str, timeout: int = LOCK_TIMEOUT) -> bool:
	"""
	Acquire a lock using the specified name. False if already held.
	"""
	return cache.add(lock_key, True, timeout)


def release(lock_key: str) -> None:
	cache.delete(lock_key)
