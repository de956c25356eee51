"""Provide the vaultsync configuration."""

import argparse
import logging
import os
from os import environ as env
from typing import List, Optional

from aiobotocore.session import get_session
from botocore.config import Config
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

from vaultsync.core import ConfigurationError
from vaultsync.storage.s3 import DEFAULT_PART_SIZE

logger = logging.getLogger(__name__)

ENV_FILE = find_dotenv(usecwd=True)
if ENV_FILE:
    load_dotenv(ENV_FILE)

ENV_PREFIX = "VAULTSYNC_"
DEFAULT_IGNORE = [".DS_Store", ".obsidian/**", ".trash/**"]
REQUIRED_FIELDS = ["access_key_id", "secret_access_key", "region_name", "bucket"]


class SyncConfig(BaseModel):
    """Connection and vault settings."""

    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region_name: Optional[str] = None
    bucket: Optional[str] = None
    endpoint_url: Optional[str] = Field(
        None, description="Endpoint of an S3-compatible store, e.g. MinIO"
    )
    prefix: str = Field("", description="Key prefix of the vault inside the bucket")
    vault_dir: str = Field(default_factory=os.getcwd)
    branch: str = "main"
    ignore: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE))
    part_size: int = DEFAULT_PART_SIZE

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "SyncConfig":
        values = {
            name: value
            for name, value in vars(args).items()
            if name in cls.model_fields and value is not None
        }
        return cls(**values)

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def is_configured(self) -> bool:
        return not self.missing_fields()

    def check(self):
        """Raise ConfigurationError if a required connection parameter is missing."""
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                "Missing S3 settings: "
                + ", ".join(name.replace("_", "-") for name in missing)
            )

    def create_client_factory(self):
        """Return a factory creating async S3 client contexts.

        Each call opens a fresh aiobotocore client, to be used as
        `async with factory() as s3_client`.
        """
        self.check()
        session = get_session()
        config = Config(connect_timeout=60, read_timeout=300)

        def s3_client_factory():
            return session.create_client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                region_name=self.region_name,
                config=config,
            )

        return s3_client_factory


def get_args_from_env(parser: Optional[argparse.ArgumentParser] = None):
    """Read the arguments from VAULTSYNC_<ARG_NAME> environment variables."""
    parser = parser or get_argparser(add_help=False)
    args = parser.parse_args([])

    # Get the argument types from the parser
    arg_types = {
        action.dest: action.type
        for action in parser._actions
        if action.type is not None
    }
    arg_bools = {
        action.dest
        for action in parser._actions
        if isinstance(action, argparse._StoreTrueAction)
    }
    arg_lists = {action.dest for action in parser._actions if action.nargs == "*"}

    for arg_name in vars(args):
        env_var = ENV_PREFIX + arg_name.upper().replace("-", "_")
        if env_var in env:
            value = env[env_var]

            if arg_name in arg_bools:
                value = value.lower() in ("true", "1", "yes", "y", "on")
            elif arg_name in arg_types:
                try:
                    if arg_types[arg_name] == str and isinstance(value, str):
                        if arg_name in arg_lists:
                            value = value.split()
                    else:
                        value = arg_types[arg_name](value)
                except (ValueError, TypeError) as e:
                    logger.warning(
                        f"Failed to convert environment variable {env_var}={value} "
                        f"to type {arg_types[arg_name]}: {str(e)}"
                    )
                    continue

            setattr(args, arg_name, value)

    return args


def add_config_arguments(parser: argparse.ArgumentParser):
    """Add the connection and vault options to a parser."""
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="load arguments from environment variables, the environment variables should be in the format of VAULTSYNC_<ARG_NAME>",
    )
    parser.add_argument(
        "--access-key-id",
        type=str,
        default=None,
        help="the access key id for the S3 store",
    )
    parser.add_argument(
        "--secret-access-key",
        type=str,
        default=None,
        help="the secret access key for the S3 store",
    )
    parser.add_argument(
        "--region-name",
        type=str,
        default=None,
        help="the region name of the S3 bucket",
    )
    parser.add_argument(
        "--bucket",
        type=str,
        default=None,
        help="the S3 bucket holding the vault",
    )
    parser.add_argument(
        "--endpoint-url",
        type=str,
        default=None,
        help="the endpoint of an S3-compatible store (e.g. a MinIO server)",
    )
    parser.add_argument(
        "--prefix",
        type=str,
        default="",
        help="key prefix of the vault inside the bucket",
    )
    parser.add_argument(
        "--vault-dir",
        type=str,
        default=None,
        help="the local vault directory (default: current directory)",
    )
    parser.add_argument(
        "--branch",
        type=str,
        default="main",
        help="the branch to synchronize",
    )
    parser.add_argument(
        "--ignore",
        type=str,
        nargs="*",
        default=list(DEFAULT_IGNORE),
        help="patterns written to .gitignore when a new vault is created",
    )
    parser.add_argument(
        "--part-size",
        type=int,
        default=DEFAULT_PART_SIZE,
        help="part size in bytes for multipart uploads",
    )
    return parser


def get_argparser(add_help=True):
    """Return the argument parser for the connection and vault options."""
    parser = argparse.ArgumentParser(add_help=add_help)
    return add_config_arguments(parser)


def load_config(args: argparse.Namespace) -> SyncConfig:
    """Build a SyncConfig from parsed arguments, merging the environment if requested."""
    if getattr(args, "from_env", False):
        logger.info("Loading arguments from environment variables")
        parser = get_argparser(add_help=False)
        _args = get_args_from_env(parser)
        for key, value in _args.__dict__.items():
            default = parser.get_default(key)
            # Explicit command-line values win over the environment
            if getattr(args, key, None) in (None, default):
                setattr(args, key, value)
    return SyncConfig.from_args(args)
