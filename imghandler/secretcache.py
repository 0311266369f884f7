import threading
from logging import Logger
from typing import Optional

from mypy_boto3_ssm.client import SSMClient


class SecretCache:
  """Holds the URL signing secret for the lifetime of the process.

  The secret is fetched from Parameter Store on first use, and only when
  signature verification is enabled. Concurrent callers may each fetch it, but
  only the first fetched value is ever stored; everyone observes that value.
  A failed fetch leaves the cache empty so that a later call can try again.
  """

  def __init__(
      self,
      log: Logger,
      ssm: SSMClient,
      enabled: bool,
      parameter_name: str,
  ):
    self.log = log
    self.ssm = ssm
    self.enabled = enabled
    self.parameter_name = parameter_name
    self._secret: Optional[str] = None
    self._lock = threading.Lock()

  @property
  def secret(self) -> Optional[str]:
    return self._secret

  def ensure_loaded(self) -> Optional[str]:
    if not self.enabled:
      return None

    if self._secret is not None:
      return self._secret

    try:
      res = self.ssm.get_parameter(Name=self.parameter_name, WithDecryption=True)
    except Exception as e:
      self.log.error({
          'message': 'failed to load secret',
          'parameter_name': self.parameter_name,
          'reason': str(e),
      })
      raise

    return self._store(res['Parameter']['Value'])

  def _store(self, value: str) -> str:
    with self._lock:
      if self._secret is None:
        self._secret = value
        self.log.debug({'message': 'secret loaded', 'parameter_name': self.parameter_name})
      return self._secret
