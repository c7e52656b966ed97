from __future__ import annotations

import json

import pytest

from outpost.config.provider import ProviderDefaults
from outpost.embedded.container import EmbeddedTransport
from outpost.errors import ConfigurationError
from tests.fakes import FakeTransport, factory_for


def test_from_wire_and_resolve(ctx, ssh_block):
    factory = factory_for(FakeTransport)
    defaults = ProviderDefaults.from_wire(
        {"transport": ssh_block}, client_factory=factory, client_options={"connect_timeout": 5.0}
    )

    override = EmbeddedTransport.from_wire({"ssh": {"host": "10.0.0.9"}})
    resolved = defaults.resolve(override)
    variant = resolved.validate(ctx)

    assert variant.get("host") == "10.0.0.9"
    assert variant.get("user") == "ubuntu"
    resolved.client(ctx)
    assert factory.built[0][1] == {"connect_timeout": 5.0}


def test_resolve_does_not_mutate_defaults(ssh_block):
    defaults = ProviderDefaults.from_wire({"transport": ssh_block})
    defaults.resolve(EmbeddedTransport.from_wire({"ssh": {"host": "10.0.0.9"}}))
    assert defaults.snapshot().variant("ssh").get("host") == "10.0.0.5"


def test_errors_are_reported_under_provider():
    with pytest.raises(ConfigurationError) as excinfo:
        ProviderDefaults.from_wire({"transport": {"ssh": {"hostname": "x"}}})
    assert excinfo.value.path == "provider.transport.ssh.hostname"

    with pytest.raises(ConfigurationError) as excinfo:
        ProviderDefaults.from_wire({"transport": {}, "region": "eu"})
    assert excinfo.value.path == "region"


def test_from_settings_reads_config_file(tmp_path, settings, ssh_block):
    config = tmp_path / "provider.json"
    config.write_text(json.dumps({"transport": ssh_block}), encoding="utf-8")
    settings = settings.model_copy(update={"provider_config": config})

    defaults = ProviderDefaults.from_settings(settings)
    assert defaults.snapshot().kind == "ssh"
    assert defaults.client_options == {"connect_timeout": 10.0, "default_port": 22}
    assert "SSH Transport Config" in defaults.describe()


def test_unreadable_config_file(tmp_path):
    with pytest.raises(ConfigurationError) as excinfo:
        ProviderDefaults.from_file(tmp_path / "missing.json")
    assert excinfo.value.path == "provider_config"


def test_empty_defaults_resolve_to_action_block(ctx, ssh_block):
    resolved = ProviderDefaults().resolve(EmbeddedTransport.from_wire(ssh_block))
    assert resolved.validate(ctx).get("host") == "10.0.0.5"
