import dataclasses
import os
from typing import Mapping, Optional

DEFAULT_REGION = 'us-east-1'


def is_yes(value: Optional[str]) -> bool:
  return value == 'Yes'


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  region: str = DEFAULT_REGION
  enable_signature: bool = False
  secret_parameter_name: str = ''
  enable_fallback: bool = False
  fallback_bucket: str = ''
  fallback_key: str = ''
  cors_enabled: bool = False
  cors_origin: str = ''
  source_buckets: tuple[str, ...] = ()
  auto_webp: bool = False

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
    env = os.environ if environ is None else environ

    source_buckets = tuple(
        b.strip() for b in env.get('SOURCE_BUCKETS', '').split(',') if b.strip() != '')

    return cls(
        region=env.get('AWS_REGION', DEFAULT_REGION),
        enable_signature=is_yes(env.get('ENABLE_SIGNATURE')),
        secret_parameter_name=env.get('PS_PARAMETER_NAME', ''),
        enable_fallback=is_yes(env.get('ENABLE_DEFAULT_FALLBACK_IMAGE')),
        fallback_bucket=env.get('DEFAULT_FALLBACK_IMAGE_BUCKET', ''),
        fallback_key=env.get('DEFAULT_FALLBACK_IMAGE_KEY', ''),
        cors_enabled=is_yes(env.get('CORS_ENABLED')),
        cors_origin=env.get('CORS_ORIGIN', ''),
        source_buckets=source_buckets,
        auto_webp=is_yes(env.get('AUTO_WEBP')))

  @property
  def fallback_configured(self) -> bool:
    return (
        self.enable_fallback and self.fallback_bucket.strip() != '' and
        self.fallback_key.strip() != '')
