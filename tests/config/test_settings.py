"""Main config file: parsing and the ordered, first-error-wins validation"""

import pytest
import yaml

from eldim.config.settings import Config, load_config, parse_config
from eldim.errors import ConfigurationError, ValidationError

METRICS_USER = "PromUser0123456789abcdef"  # 24 chars
METRICS_PASS = "PromPass0123456789ABCDEF"


def build(config_dict, **overrides) -> Config:
    data = dict(config_dict)
    data.update(overrides)
    return parse_config(yaml.safe_dump(data))


def test_valid_config_passes(config_dict):
    clients = build(config_dict).validate_config()
    assert [c.name for c in clients] == ["web01", "db01"]


def test_load_config_from_disk(tmp_path, config_dict):
    path = tmp_path / "eldim.yml"
    path.write_text(yaml.safe_dump(config_dict))
    config = load_config(str(path))
    assert config.max_upload_bytes == 64 * 1024 * 1024
    assert config.encryption.age_id == config_dict["encryption"]["age-id"]


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigurationError, match="Could not open configuration file"):
        load_config(str(tmp_path / "nope.yml"))


def test_wrong_type_names_the_field():
    with pytest.raises(ConfigurationError, match="'listenport'"):
        parse_config("listenport: not-a-number\n")


def test_config_is_immutable(config_dict):
    config = build(config_dict)
    with pytest.raises(Exception):
        config.listenport = 1


@pytest.mark.parametrize("port,message", [(-1, "positive"), (70000, "below 65535")])
def test_listen_port_range(config_dict, port, message):
    with pytest.raises(ValidationError, match=message):
        build(config_dict, listenport=port).validate_config()


def test_tls_files_required_and_readable(config_dict, tmp_path):
    with pytest.raises(ValidationError, match="TLS Chain File is required"):
        build(config_dict, tlschain="").validate_config()
    with pytest.raises(ValidationError, match="Failed to open TLS Key File"):
        build(config_dict, tlskey=str(tmp_path / "missing.key")).validate_config()


def test_zero_backends_fails(config_dict):
    with pytest.raises(ValidationError, match="needs at least one backend"):
        build(config_dict, s3backends=[]).validate_config()


def test_backend_errors_name_the_backend(config_dict):
    broken = dict(config_dict["s3backends"][0], endpoint="https://minio.example.com")
    with pytest.raises(ValidationError) as exc:
        build(config_dict, s3backends=[broken]).validate_config()
    assert "Failed to validate S3 Backend 'minio'" in exc.value.message


def test_swift_and_gcs_backends_are_checked(config_dict, tmp_path):
    swift = {"name": "ovh", "username": "u", "apikey": "k", "authurl": "https://auth.example.com/v3",
             "region": "GRA", "container": ""}
    with pytest.raises(ValidationError, match="OpenStack Swift Backend 'ovh'"):
        build(config_dict, swiftbackends=[swift]).validate_config()

    gcs = {"name": "gcs", "bucketname": "b", "credsfile": str(tmp_path / "missing.json")}
    with pytest.raises(ValidationError, match="Google Cloud Storage Backend 'gcs'"):
        build(config_dict, gcsbackends=[gcs]).validate_config()


def test_upload_ram_must_be_positive(config_dict):
    with pytest.raises(ValidationError, match="Maximum Upload RAM"):
        build(config_dict, maxuploadram=0).validate_config()


def test_concurrent_uploads_must_be_positive(config_dict):
    assert build(config_dict).maxconcurrentuploads == 16
    with pytest.raises(ValidationError, match="concurrent uploads"):
        build(config_dict, maxconcurrentuploads=0).validate_config()


def test_request_timeout_not_below_backend_timeout(config_dict):
    with pytest.raises(ValidationError, match="Request timeout"):
        build(config_dict, backendtimeout=30, requesttimeout=10).validate_config()


def test_deprecated_encryption_key_is_an_error(config_dict):
    with pytest.raises(ValidationError, match="deprecated"):
        build(config_dict, encryptionkey="0123456789abcdef").validate_config()


def test_recipients_required_and_parsed(config_dict):
    with pytest.raises(ValidationError, match="at least one age encryption key"):
        build(config_dict, encryption={}).validate_config()
    with pytest.raises(ValidationError, match="Failed to parse age Identity"):
        build(config_dict, encryption={"age-id": ["age1notakey"]}).validate_config()
    with pytest.raises(ValidationError, match="Failed to parse age ssh key"):
        build(config_dict, encryption={"age-ssh": ["ssh-ed25519 garbage"]}).validate_config()


def test_metrics_auth_too_short(config_dict):
    with pytest.raises(ValidationError, match="prometheusauthuser must contain"):
        build(
            config_dict,
            prometheusenabled=True,
            prometheusauthuser="shortuser1",
            prometheusauthpass=METRICS_PASS,
        ).validate_config()


def test_metrics_auth_missing_password(config_dict):
    with pytest.raises(ValidationError, match="set the prometheusauthpass"):
        build(config_dict, prometheusenabled=True, prometheusauthuser=METRICS_USER).validate_config()


def test_metrics_auth_24_alnum_chars_passes(config_dict):
    build(
        config_dict,
        prometheusenabled=True,
        prometheusauthuser=METRICS_USER,
        prometheusauthpass=METRICS_PASS,
    ).validate_config()


def test_metrics_credentials_ignored_when_disabled(config_dict):
    build(config_dict, prometheusenabled=False, prometheusauthuser="x").validate_config()


def test_roster_problems_fail_config(config_dict, write_clients):
    dup = write_clients(
        [{"name": "a", "ipv4": ["10.0.0.1"]}, {"name": "b", "ipv4": ["10.0.0.1"]}],
        name="dup.yml",
    )
    with pytest.raises(ValidationError, match="reuses an IP Address: 10.0.0.1"):
        build(config_dict, clientfile=dup).validate_config()

    empty = write_clients([], name="empty.yml")
    with pytest.raises(ValidationError, match="No clients"):
        build(config_dict, clientfile=empty).validate_config()


def test_first_error_wins(config_dict):
    # Both the port and the backend list are wrong; the port is checked first
    with pytest.raises(ValidationError, match="Listening Port"):
        build(config_dict, listenport=-5, s3backends=[]).validate_config()
