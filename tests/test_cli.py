"""eldim command line: startup failures exit 1, a good config reaches uvicorn"""

import ssl

import yaml
from typer.testing import CliRunner

from eldim.cli import app

runner = CliRunner()


def test_missing_config_exits_1(tmp_path):
    result = runner.invoke(app, ["-c", str(tmp_path / "nope.yml")])
    assert result.exit_code == 1


def test_invalid_config_exits_1(tmp_path, config_dict):
    path = tmp_path / "eldim.yml"
    path.write_text(yaml.safe_dump(dict(config_dict, listenport=70000)))
    result = runner.invoke(app, ["-c", str(path), "-j"])
    assert result.exit_code == 1


def test_valid_config_serves_tls(mocker, tmp_path, config_dict):
    path = tmp_path / "eldim.yml"
    path.write_text(yaml.safe_dump(config_dict))
    build = mocker.patch("eldim.cli.build_coordinator")
    run = mocker.patch("eldim.cli.uvicorn.run")

    result = runner.invoke(app, ["--config", str(path)])

    assert result.exit_code == 0
    # the roster validated once is the one the pipeline is built from
    assert [c.name for c in build.call_args.args[1]] == ["web01", "db01"]
    kwargs = run.call_args.kwargs
    assert kwargs["port"] == 31337
    assert kwargs["ssl_certfile"] == config_dict["tlschain"]
    assert kwargs["ssl_keyfile"] == config_dict["tlskey"]
    assert kwargs["ssl_version"] == ssl.PROTOCOL_TLS_SERVER


def test_bind_failure_exits_1(mocker, tmp_path, config_dict):
    path = tmp_path / "eldim.yml"
    path.write_text(yaml.safe_dump(config_dict))
    mocker.patch("eldim.cli.build_coordinator")
    mocker.patch("eldim.cli.uvicorn.run", side_effect=OSError("Address already in use"))

    assert runner.invoke(app, ["-c", str(path)]).exit_code == 1


def test_backend_that_cannot_be_set_up_exits_1(mocker, tmp_path, config_dict):
    creds = tmp_path / "sa.json"
    creds.write_text("not json at all")
    gcs = {"name": "gcs", "bucketname": "backups", "credsfile": str(creds)}
    path = tmp_path / "eldim.yml"
    path.write_text(yaml.safe_dump(dict(config_dict, gcsbackends=[gcs])))
    run = mocker.patch("eldim.cli.uvicorn.run")

    result = runner.invoke(app, ["-c", str(path)])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    run.assert_not_called()
