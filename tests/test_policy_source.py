from __future__ import annotations

import pytest

from permbot.agent.source import ConfigMapSource, FileSource
from permbot.core.errors import ConfigDecodeError, SourceEmpty, SourceInvalid, SourceUnavailable
from permbot.core.models import ANNOTATION_RULES_REF


def _cm(text, *, annotations=None, rv="42"):
    return {
        "name": "config",
        "namespace": "permbot",
        "resource_version": rv,
        "annotations": annotations or {},
        "data": {"permbot.toml": text},
    }


def test_configmap_source_decodes_and_keeps_provenance(fake_cluster_cls, sample_toml, sample_config):
    cluster = fake_cluster_cls(
        config_maps={("permbot", "config"): _cm(sample_toml, annotations={ANNOTATION_RULES_REF: "abc"})}
    )
    cfg, prov = ConfigMapSource(cluster, "permbot", "config").fetch()

    assert cfg == sample_config
    assert prov.source == "configmap/permbot/config"
    assert prov.resource_version == "42"
    assert prov.rules_ref == "abc"


def test_configmap_missing_is_unavailable(fake_cluster_cls):
    with pytest.raises(SourceUnavailable):
        ConfigMapSource(fake_cluster_cls(), "permbot", "config").fetch()


def test_configmap_read_error_is_unavailable(fake_cluster_cls):
    cluster = fake_cluster_cls(config_maps={("permbot", "config"): RuntimeError("connection refused")})
    with pytest.raises(SourceUnavailable) as ei:
        ConfigMapSource(cluster, "permbot", "config").fetch()
    assert "connection refused" in str(ei.value)


@pytest.mark.parametrize("text", ["", "   \n"])
def test_configmap_blank_key_is_empty(fake_cluster_cls, text):
    cluster = fake_cluster_cls(config_maps={("permbot", "config"): _cm(text)})
    with pytest.raises(SourceEmpty):
        ConfigMapSource(cluster, "permbot", "config").fetch()


def test_configmap_wrong_key_is_empty(fake_cluster_cls, sample_toml):
    cluster = fake_cluster_cls(config_maps={("permbot", "config"): _cm(sample_toml)})
    with pytest.raises(SourceEmpty):
        ConfigMapSource(cluster, "permbot", "config", key="other.toml").fetch()


def test_configmap_undecodable_is_invalid(fake_cluster_cls):
    cluster = fake_cluster_cls(config_maps={("permbot", "config"): _cm("[[role]\n")})
    with pytest.raises(SourceInvalid) as ei:
        ConfigMapSource(cluster, "permbot", "config").fetch()
    assert isinstance(ei.value, ConfigDecodeError)


def test_provenance_without_annotation_has_no_rules_ref(fake_cluster_cls, sample_toml):
    cluster = fake_cluster_cls(config_maps={("permbot", "config"): _cm(sample_toml)})
    _, prov = ConfigMapSource(cluster, "permbot", "config").fetch()
    assert prov.rules_ref is None


def test_file_source(sample_config_file, sample_config):
    cfg, prov = FileSource(sample_config_file, rules_ref="v2").fetch()
    assert cfg == sample_config
    assert prov.rules_ref == "v2"
    assert prov.source.startswith("file/")


def test_file_source_missing(tmp_path):
    with pytest.raises(SourceUnavailable):
        FileSource(tmp_path / "nope.toml").fetch()
