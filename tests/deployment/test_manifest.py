"""Tests for deployment manifest rendering"""

import json
import pytest

from edge_connectivity.config import load_config
from edge_connectivity.deployment import (
    find_placeholders,
    manifest_fingerprint,
    manifest_parameters,
    module_names,
    render_manifest
)
from edge_connectivity.error_handling import DeployError, DeployErrorKind
from edge_connectivity.models import FaultMode

PARAMS = {
    "CR.Address": "edgebuilds.azurecr.io",
    "CR.Username": "builder",
    "CR.Password": 'pa"ss\\word',
    "Build.BuildNumber": "20240101.1-linux-amd64",
    "LoadGen.MessageFrequency": "00:00:00.05",
    "TrackingId": "ct-linux_amd64_moby-0001",
    "NetworkController.Frequencies": "00:05:00 00:05:00 6",
    "NetworkController.RunProfile": FaultMode.OFFLINE,
}


class TestRenderManifest:
    """Test cases for manifest rendering"""

    def test_placeholders_found(self, deployment_template):
        """Test placeholders are listed once in order of appearance"""
        names = find_placeholders(deployment_template)
        assert names[:3] == ["CR.Address", "CR.Username", "CR.Password"]
        assert len(names) == len(set(names))

    def test_render(self, deployment_template):
        """Test every placeholder is substituted"""
        manifest = render_manifest(deployment_template, PARAMS)

        desired = manifest["modulesContent"]["$edgeAgent"]["properties.desired"]
        load_gen = desired["modules"]["loadGen1"]
        assert load_gen["settings"]["image"] == "edgebuilds.azurecr.io/load-gen:20240101.1-linux-amd64"
        assert load_gen["env"]["trackingId"]["value"] == "ct-linux_amd64_moby-0001"
        controller_env = desired["modules"]["networkController"]["env"]
        assert controller_env["mode"]["value"] == "Offline"

    def test_values_are_json_escaped(self, deployment_template):
        """Test quotes and backslashes in values keep the manifest valid"""
        manifest = render_manifest(deployment_template, PARAMS)
        credentials = manifest["modulesContent"]["$edgeAgent"]["properties.desired"]["runtime"]["settings"]["registryCredentials"]
        assert credentials["edgebuilds"]["password"] == 'pa"ss\\word'

    def test_unresolved_placeholders(self, deployment_template):
        """Test a missing parameter is a manifest error naming the placeholder"""
        params = dict(PARAMS)
        del params["TrackingId"]

        with pytest.raises(DeployError) as exc_info:
            render_manifest(deployment_template, params)

        assert exc_info.value.kind == DeployErrorKind.MANIFEST_INVALID
        assert "TrackingId" in str(exc_info.value)

    def test_invalid_json(self):
        """Test a template that does not render to JSON"""
        with pytest.raises(DeployError, match="not valid JSON"):
            render_manifest('{"modulesContent": <Value>', {"Value": "x"})

    def test_no_modules(self):
        """Test a manifest declaring no modules"""
        template = json.dumps({"modulesContent": {"$edgeAgent": {"properties.desired": {"modules": {}}}}})
        with pytest.raises(DeployError, match="declares no"):
            render_manifest(template, {})

    def test_module_names(self, deployment_template):
        """Test module names come from the agent's desired properties"""
        manifest = render_manifest(deployment_template, PARAMS)
        assert module_names(manifest) == ["loadGen1", "networkController"]
        assert module_names(None) == []
        assert module_names({"modulesContent": {}}) == []


class TestFingerprint:
    """Test cases for manifest fingerprints"""

    def test_stable_for_key_order(self):
        """Test the digest does not depend on key order"""
        first = {"a": 1, "b": {"c": 2, "d": 3}}
        second = {"b": {"d": 3, "c": 2}, "a": 1}
        assert manifest_fingerprint(first) == manifest_fingerprint(second)

    def test_extra_inputs_change_digest(self):
        """Test deployment inputs are part of the digest"""
        manifest = {"a": 1}
        assert manifest_fingerprint(manifest, {"host": "a"}) != manifest_fingerprint(manifest, {"host": "b"})


class TestManifestParameters:
    """Test cases for placeholder values built from configuration"""

    def test_parameters(self):
        """Test run parameters are rendered as TimeSpan strings and enum values"""
        config = load_config(parameters={
            "container.registry": "edgebuilds.azurecr.io",
            "testDuration": "01:00:00",
            "loadGen.message.frequency.arm32": "00:00:01",
            "metricsCollector.metricsEndpointsCSV": "http://edgeHub:9600/metrics,http://edgeAgent:9600/metrics",
            "metricsCollector.uploadTarget": "Store",
            "metricsCollector.scrapeFrequencyInSecs": "300",
        })
        params = config.resolve("linux_arm32v7_moby")

        values = manifest_parameters(config, params, "20240101.1-linux-arm32v7", "run-1")

        assert values["Architecture"] == "arm32v7"
        assert values["CR.Address"] == "edgebuilds.azurecr.io"
        assert values["Build.BuildNumber"] == "20240101.1-linux-arm32v7"
        assert values["TrackingId"] == "run-1"
        assert values["TestDuration"] == "01:00:00"
        assert values["LoadGen.MessageFrequency"] == "00:00:01"
        assert values["MetricsCollector.MetricsEndpointsCSV"] == "http://edgeHub:9600/metrics,http://edgeAgent:9600/metrics"
        assert values["MetricsCollector.ScrapeFrequencyInSecs"] == 300
        assert values["MetricsCollector.HostPlatform"] == "linux_arm32v7_moby"
        assert values["TestResultCoordinator.ReportUrl"] == ""

        values = manifest_parameters(
            config, params, "20240101.1-linux-arm32v7", "run-1",
            report_url="http://edge-host:5001/api/testoperationresults"
        )
        assert values["TestResultCoordinator.ReportUrl"] == "http://edge-host:5001/api/testoperationresults"
