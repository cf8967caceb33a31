import io
import os
import ZConfig


SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.xml")

_schema = None


def get_schema():
    global _schema
    if _schema is None:
        with open(SCHEMA_PATH) as f:
            _schema = ZConfig.loadSchemaFile(f)
    return _schema


class BaseConfig:
    """ZConfig section factory; ``open()`` builds the configured object."""

    def __init__(self, config):
        self.config = config
        self.name = config.getSectionName()

    def open(self):
        raise NotImplementedError


class FilesystemBackendFactory(BaseConfig):
    def open(self):
        from s3gateway.fsbackend import FilesystemBackend

        return FilesystemBackend(
            self.config.root, anonymous_writes=self.config.anonymous_writes
        )


class S3BackendFactory(BaseConfig):
    def open(self):
        from s3gateway.s3client import S3Backend

        config = self.config
        return S3Backend(
            bucket_name=config.bucket_name,
            prefix=config.s3_prefix or "",
            endpoint_url=config.s3_endpoint_url,
            region_name=config.s3_region,
            aws_access_key_id=config.s3_access_key,
            aws_secret_access_key=config.s3_secret_key,
            use_ssl=config.s3_use_ssl,
            addressing_style=config.s3_addressing_style,
            connect_timeout=config.s3_connect_timeout,
            read_timeout=config.s3_read_timeout,
            sse_customer_key=config.s3_sse_customer_key,
            anonymous_writes=config.anonymous_writes,
        )


class GatewayFactory(BaseConfig):
    """Top-level factory for a configured Gateway."""

    def open(self):
        from s3gateway.gateway import Gateway
        from s3gateway.multipart import MultipartCoordinator

        config = self.config
        backend = config.backend.open()
        coordinator = MultipartCoordinator(
            staging_dir=config.staging_dir,
            max_age=config.multipart_max_age,
            gc_interval=config.multipart_gc_interval,
        )
        return Gateway(backend, coordinator, owner=config.owner or "")


def load_config(f):
    """Read a configuration file object and return its GatewayFactory."""
    config, _handler = ZConfig.loadConfigFile(get_schema(), f)
    return GatewayFactory(config)


def gateway_from_string(text):
    return load_config(io.StringIO(text)).open()


def gateway_from_file(path):
    with open(path) as f:
        return load_config(f).open()
