"""Tests for the command line flow."""

import pytest

import run
from pod_exposer.errors import NotFoundError


def parse(*argv):
    return run.build_parser().parse_args(list(argv))


class TestParser:
    """Tests for command line flags."""

    def test_defaults(self):
        args = parse()

        assert args.new_ns_name == "my-new-namespace"
        assert args.new_pod_name == "my-new-pod"
        assert args.label_selector == "k8s-app=kube-dns"
        assert args.node_port == 30000
        assert args.kubeconfig_path.endswith(".kube/config")
        assert not args.create_only and not args.delete_only and not args.watch

    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse("--create-only", "--delete-only")


class TestCrudFlow:
    """Tests for the list, create, prompt and delete flow."""

    def test_full_flow_creates_then_cleans_up(self, fake_client, monkeypatch, capsys):
        prompts = []
        monkeypatch.setattr("builtins.input", lambda prompt="": prompts.append(prompt))

        run.run_crud(fake_client, parse("--new-ns-name", "demo", "--new-pod-name", "web-1"))

        assert len(prompts) == 1
        assert "demo" not in fake_client.namespaces
        assert fake_client.pods == {}
        out = capsys.readouterr().out
        assert "available namespaces: ['default', 'kube-system']" in out
        assert "exposed pod web-1 on node port 30000" in out
        assert "deleted namespace demo" in out

    def test_create_only(self, fake_client, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt="": pytest.fail("unexpected prompt"))

        run.run_crud(fake_client, parse("--create-only", "--new-ns-name", "demo"))

        assert "demo" in fake_client.namespaces
        assert ("demo", "my-new-pod") in fake_client.pods
        assert fake_client.services[("demo", "my-new-pod")].node_port == 30000
        assert not [c for c in fake_client.calls if c[0].startswith("delete")]

    def test_delete_only(self, fake_client, monkeypatch):
        fake_client.namespaces.append("demo")
        fake_client.pods[("demo", "web-1")] = {"name": "web-1"}
        monkeypatch.setattr("builtins.input", lambda prompt="": pytest.fail("unexpected prompt"))

        run.run_crud(fake_client, parse("--delete-only", "--new-ns-name", "demo", "--new-pod-name", "web-1"))

        assert "demo" not in fake_client.namespaces
        assert not [c for c in fake_client.calls if c[0].startswith("create")]

    def test_failed_step_propagates(self, fake_client):
        with pytest.raises(NotFoundError):
            run.run_crud(fake_client, parse("--delete-only", "--new-ns-name", "missing"))


class TestMain:
    """Tests for the entry point."""

    def test_config_failure_exits(self, monkeypatch):
        def fail(**kwargs):
            raise OSError("no kubeconfig")

        monkeypatch.setattr(run.config, "load_kube_config", fail)

        with pytest.raises(SystemExit) as exc_info:
            run.main(["--kubeconfig-path", "/nonexistent"])

        assert exc_info.value.code == 1

    def test_remote_error_exits(self, fake_client, monkeypatch):
        monkeypatch.setattr(run.config, "load_kube_config", lambda **kwargs: None)
        monkeypatch.setattr(run, "KubernetesResourceClient", lambda core_api: fake_client)

        with pytest.raises(SystemExit) as exc_info:
            run.main(["--delete-only", "--new-ns-name", "missing"])

        assert exc_info.value.code == 1
