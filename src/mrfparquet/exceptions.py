class InvalidMRF(Exception):
	"""A shard or document can't be turned into records."""


class MissingFieldError(InvalidMRF):

	def __init__(self, path: str):
		super().__init__(f'Required field missing: {path}')
		self.path = path


class MalformedFieldError(InvalidMRF):

	def __init__(self, path: str, expected: str, value):
		super().__init__(
			f'Malformed field: {path} (expected {expected}, got {type(value).__name__})'
		)
		self.path = path


class UnsupportedRecordError(InvalidMRF):
	pass


class LineTooLongError(Exception):
	pass


class WriterError(Exception):
	pass
