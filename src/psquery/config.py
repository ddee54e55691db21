""" Environment-driven settings. Every value has a default suitable for a
    single host running the ZeroMQ broker on its default ports; any of them
    can be overridden with a PSQUERY_* environment variable, for example
    PSQUERY_TIMEOUT_MS for :attr:`Settings.timeout_ms`.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


default_frontend = 'tcp://127.0.0.1:10139'
default_backend = 'tcp://127.0.0.1:10140'


class Settings(BaseSettings):
    """ Snapshot of the PSQUERY_* environment variables. Keyword arguments
        take precedence over the environment. A malformed value raises a
        :class:`pydantic.ValidationError`, which is also a ValueError, and
        names the offending setting.
    """

    model_config = SettingsConfigDict(
        env_prefix='PSQUERY_',
        extra='ignore',
        frozen=True,
        validate_default=True,
    )

    transport: Literal['zmq', 'rabbitmq', 'memory'] = Field('zmq', description='Transport backend.')
    timeout_ms: PositiveInt = Field(1000, description='Default query timeout in milliseconds.')
    connect_timeout_ms: PositiveInt = Field(5000, description='Upper bound on establishing a connection.')
    workers: PositiveInt = Field(8, description='Worker threads handling inbound queries.')
    auth_service: str = Field('auth', min_length=1, description='Service name answering file access checks.')

    zmq_frontend: str = Field(default_frontend, description='Broker endpoint publishers connect to.')
    zmq_backend: str = Field(default_backend, description='Broker endpoint subscribers connect to.')

    amqp_host: str = 'localhost'
    amqp_port: PositiveInt = 5672
    amqp_exchange: str = 'psquery'

    log_level: Literal['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'] = 'WARNING'

    @field_validator('transport', mode='before')
    @classmethod
    def _lower(cls, value):
        if isinstance(value, str):
            return value.lower()
        return value

    @field_validator('log_level', mode='before')
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            return value.upper()
        return value


def settings() -> Settings:
    """ Return the settings currently described by the environment. The
        environment is consulted on every call, there is no caching.
    """

    return Settings()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
