"""
Patch orchestrator tests.

This module contains tests for:
- Ordered application and downstream cascade
- Up-to-date installations that need no work
- Halting on incompatible versions
- Untracked components
- Archive passwords
- Temporary artifact cleanup
- Full install bootstrap
"""

from contextlib import contextmanager

import pytest

from layerpatch.constants import RESERVED_ARTIFACTS
from layerpatch.exceptions import (
    ArchiveEntryError,
    ArchiveFormatError,
    ArchivePasswordError,
    ArchivePasswordRequiredError,
    IncompatibleVersionError,
    NetworkError,
)
from layerpatch.patch.interfaces import Component, ComponentState
from layerpatch.patch.orchestrator import PatchOrchestrator
from layerpatch.patch.version import VersionStatus

GAME_VERSION_URL = "https://cdn.example.org/game/version.txt"
GAME_PATCH_URL = "https://cdn.example.org/game/patch.zip"
GAME_INSTALL_URL = "https://cdn.example.org/game/full.zip"
MOD_A_VERSION_URL = "https://cdn.example.org/mod-a/version.txt"
MOD_A_PATCH_URL = "https://cdn.example.org/mod-a/patch.zip"
MOD_B_PATCH_URL = "https://cdn.example.org/mod-b/latest.zip"


@pytest.fixture
def install_dir(tmp_path):
    root = tmp_path / "install"
    root.mkdir()
    return root


@pytest.fixture
def layered_setup(install_dir, fake_transport, make_zip):
    """
    A base game with one tracked and one untracked mod.

    The installation currently has mod A's version of shared.txt on disk.
    """
    fake_transport.resources.update(
        {
            GAME_VERSION_URL: "1.2.1\n",
            GAME_PATCH_URL: make_zip(
                "game.zip", {"shared.txt": "base 1.2.1", "game.dat": "game data"}
            ),
            MOD_A_VERSION_URL: "1.0.0",
            MOD_A_PATCH_URL: make_zip("mod-a.zip", {"shared.txt": "mod a"}),
            MOD_B_PATCH_URL: make_zip("mod-b.zip", {"mods/b/b.txt": "mod b"}),
        }
    )
    (install_dir / "shared.txt").write_text("mod a")

    components = [
        Component("Base Game", GAME_PATCH_URL, GAME_VERSION_URL, "1.2.0"),
        Component("Mod A", MOD_A_PATCH_URL, MOD_A_VERSION_URL, "1.0.0"),
        Component("Mod B", MOD_B_PATCH_URL),
    ]
    return components


def _assert_no_artifacts(root):
    for name in RESERVED_ARTIFACTS:
        assert not (root / name).exists(), name


class TestCascade:
    """Upstream changes force downstream re-application."""

    @pytest.mark.integration
    def test_outdated_base_reapplies_every_later_component(
        self, install_dir, fake_transport, layered_setup
    ):
        report = PatchOrchestrator(fake_transport, install_dir).run(layered_setup)

        assert [r.state for r in report.results] == [ComponentState.APPLIED] * 3
        assert report.results[0].status is VersionStatus.OUTDATED
        assert report.results[1].status is VersionStatus.UP_TO_DATE
        assert report.results[1].forced is True

        # Mod A's file wins again even though its own version did not change
        assert (install_dir / "shared.txt").read_text() == "mod a"
        assert (install_dir / "game.dat").read_text() == "game data"
        assert (install_dir / "mods" / "b" / "b.txt").read_text() == "mod b"

        assert [c.version for c in report.components] == ["1.2.1", "1.0.0", None]
        assert report.changed is True
        _assert_no_artifacts(install_dir)

    @pytest.mark.integration
    def test_components_are_processed_in_order(
        self, install_dir, fake_transport, layered_setup
    ):
        PatchOrchestrator(fake_transport, install_dir).run(layered_setup)

        assert fake_transport.calls == [
            GAME_VERSION_URL,
            GAME_PATCH_URL,
            MOD_A_VERSION_URL,
            MOD_A_PATCH_URL,
            MOD_B_PATCH_URL,
        ]

    @pytest.mark.integration
    def test_original_components_are_not_mutated(
        self, install_dir, fake_transport, layered_setup
    ):
        before = list(layered_setup)
        PatchOrchestrator(fake_transport, install_dir).run(layered_setup)
        assert layered_setup == before
        assert layered_setup[0].version == "1.2.0"


class TestUpToDate:
    """Installations that are already current."""

    @pytest.mark.integration
    def test_nothing_is_downloaded_and_nothing_changes(
        self, install_dir, fake_transport, make_zip
    ):
        fake_transport.resources.update(
            {
                GAME_VERSION_URL: "1.2.1",
                GAME_PATCH_URL: make_zip("game.zip", {"game.dat": "g"}),
                MOD_A_VERSION_URL: "1.0.0",
                MOD_A_PATCH_URL: make_zip("mod-a.zip", {"a.txt": "a"}),
            }
        )
        components = [
            Component("Base Game", GAME_PATCH_URL, GAME_VERSION_URL, "1.2.1"),
            Component("Mod A", MOD_A_PATCH_URL, MOD_A_VERSION_URL, "1.0.0"),
        ]

        report = PatchOrchestrator(fake_transport, install_dir).run(components)

        assert [r.state for r in report.results] == [ComponentState.SKIPPED] * 2
        assert report.changed is False
        assert report.components == components
        assert not fake_transport.fetched(GAME_PATCH_URL)
        assert not fake_transport.fetched(MOD_A_PATCH_URL)
        assert list(install_dir.iterdir()) == []

    @pytest.mark.integration
    def test_downstream_update_does_not_cascade_upstream(
        self, install_dir, fake_transport, make_zip
    ):
        fake_transport.resources.update(
            {
                GAME_VERSION_URL: "1.2.1",
                GAME_PATCH_URL: make_zip("game.zip", {"game.dat": "g"}),
                MOD_A_VERSION_URL: "1.0.1",
                MOD_A_PATCH_URL: make_zip("mod-a.zip", {"a.txt": "a"}),
            }
        )
        components = [
            Component("Base Game", GAME_PATCH_URL, GAME_VERSION_URL, "1.2.1"),
            Component("Mod A", MOD_A_PATCH_URL, MOD_A_VERSION_URL, "1.0.0"),
        ]

        report = PatchOrchestrator(fake_transport, install_dir).run(components)

        assert [r.state for r in report.results] == [
            ComponentState.SKIPPED,
            ComponentState.APPLIED,
        ]
        assert not fake_transport.fetched(GAME_PATCH_URL)
        assert report.components[1].version == "1.0.1"


class TestIncompatible:
    """Base-version boundaries halt the run."""

    @pytest.mark.integration
    def test_incompatible_component_halts_before_later_components(
        self, install_dir, fake_transport, make_zip
    ):
        mod_c_version = "https://cdn.example.org/mod-c/version.txt"
        mod_c_patch = "https://cdn.example.org/mod-c/patch.zip"
        fake_transport.resources.update(
            {
                GAME_VERSION_URL: "1.2.1",
                GAME_PATCH_URL: make_zip("game.zip", {"game.dat": "1.2.1"}),
                MOD_A_VERSION_URL: "2.0.0",
                MOD_A_PATCH_URL: make_zip("mod-a.zip", {"a.txt": "a"}),
                mod_c_version: "1.0.0",
                mod_c_patch: make_zip("mod-c.zip", {"c.txt": "c"}),
            }
        )
        components = [
            Component("Base Game", GAME_PATCH_URL, GAME_VERSION_URL, "1.2.0"),
            Component("Mod A", MOD_A_PATCH_URL, MOD_A_VERSION_URL, "1.4.2"),
            Component("Mod C", mod_c_patch, mod_c_version, "0.9.0"),
        ]
        orchestrator = PatchOrchestrator(fake_transport, install_dir)

        with pytest.raises(IncompatibleVersionError) as exc_info:
            orchestrator.run(components)

        assert exc_info.value.component == "Mod A"
        assert not fake_transport.fetched(MOD_A_PATCH_URL)
        assert not fake_transport.fetched(mod_c_version)
        assert not fake_transport.fetched(mod_c_patch)

        # The base game was applied before the failure and is not rolled back
        assert (install_dir / "game.dat").read_text() == "1.2.1"
        assert [r.name for r in orchestrator.results] == ["Base Game"]
        assert orchestrator.results[0].state is ComponentState.APPLIED
        _assert_no_artifacts(install_dir)

    @pytest.mark.integration
    def test_incompatible_first_component_applies_nothing(
        self, install_dir, fake_transport, make_zip
    ):
        fake_transport.resources.update(
            {
                GAME_VERSION_URL: "1.3.0",
                GAME_PATCH_URL: make_zip("game.zip", {"game.dat": "g"}),
            }
        )
        orchestrator = PatchOrchestrator(fake_transport, install_dir)

        with pytest.raises(IncompatibleVersionError):
            orchestrator.run([Component("Base Game", GAME_PATCH_URL, GAME_VERSION_URL, "1.2.5")])

        assert orchestrator.results == []
        assert list(install_dir.iterdir()) == []


class TestUntracked:
    """Components without a version source."""

    @pytest.mark.integration
    def test_untracked_component_applies_every_run_and_never_gains_version(
        self, install_dir, fake_transport, make_zip
    ):
        fake_transport.resources[MOD_B_PATCH_URL] = make_zip("mod-b.zip", {"b.txt": "b"})
        components = [Component("Mod B", MOD_B_PATCH_URL, version="stale")]
        orchestrator = PatchOrchestrator(fake_transport, install_dir)

        first = orchestrator.run(components)
        second = orchestrator.run(first.components)

        assert fake_transport.calls.count(MOD_B_PATCH_URL) == 2
        assert first.results[0].state is ComponentState.APPLIED
        assert second.results[0].state is ComponentState.APPLIED
        assert first.components[0].version is None
        assert second.components[0].version is None
        # Content is identical on the second pass, so nothing is rewritten
        assert second.results[0].stats.extracted_count == 0

    @pytest.mark.integration
    def test_untracked_component_cascades_to_later_ones(
        self, install_dir, fake_transport, make_zip
    ):
        fake_transport.resources.update(
            {
                MOD_B_PATCH_URL: make_zip("mod-b.zip", {"b.txt": "b"}),
                MOD_A_VERSION_URL: "1.0.0",
                MOD_A_PATCH_URL: make_zip("mod-a.zip", {"a.txt": "a"}),
            }
        )
        components = [
            Component("Mod B", MOD_B_PATCH_URL),
            Component("Mod A", MOD_A_PATCH_URL, MOD_A_VERSION_URL, "1.0.0"),
        ]

        report = PatchOrchestrator(fake_transport, install_dir).run(components)

        assert report.results[1].state is ComponentState.APPLIED
        assert fake_transport.fetched(MOD_A_PATCH_URL)


class TestPasswords:
    """Encrypted patch archives."""

    PATCH_URL = "https://cdn.example.org/secret/patch.7z"

    @pytest.mark.integration
    def test_prompted_password_is_persisted(self, install_dir, fake_transport, make_7z, mocker):
        fake_transport.resources[self.PATCH_URL] = make_7z(
            "secret.7z", {"secret.txt": "classified"}, password="hunter2"
        )
        prompt = mocker.Mock(return_value="hunter2")
        orchestrator = PatchOrchestrator(fake_transport, install_dir, password_prompt=prompt)

        report = orchestrator.run([Component("Secret Mod", self.PATCH_URL)])

        prompt.assert_called_once()
        assert prompt.call_args.args[0].name == "Secret Mod"
        assert report.components[0].password == "hunter2"
        assert report.changed is True
        assert (install_dir / "secret.txt").read_text() == "classified"
        _assert_no_artifacts(install_dir)

        prompt.reset_mock()
        orchestrator.run(report.components)
        prompt.assert_not_called()

    @pytest.mark.integration
    def test_missing_password_without_prompt_fails(self, install_dir, fake_transport, make_7z):
        fake_transport.resources[self.PATCH_URL] = make_7z(
            "secret.7z", {"secret.txt": "classified"}, password="hunter2"
        )

        with pytest.raises(ArchivePasswordRequiredError):
            PatchOrchestrator(fake_transport, install_dir).run(
                [Component("Secret Mod", self.PATCH_URL)]
            )
        _assert_no_artifacts(install_dir)

    @pytest.mark.integration
    @pytest.mark.parametrize("header_encryption", [False, True])
    def test_wrong_prompted_password_fails(
        self, install_dir, fake_transport, make_7z, mocker, header_encryption
    ):
        fake_transport.resources[self.PATCH_URL] = make_7z(
            "secret.7z",
            {"secret.txt": "classified" * 20},
            password="hunter2",
            header_encryption=header_encryption,
        )
        prompt = mocker.Mock(return_value="wrong")
        orchestrator = PatchOrchestrator(fake_transport, install_dir, password_prompt=prompt)

        with pytest.raises(ArchivePasswordError):
            orchestrator.run([Component("Secret Mod", self.PATCH_URL)])

        prompt.assert_called_once()
        assert orchestrator.results == []
        assert not (install_dir / "secret.txt").exists()
        _assert_no_artifacts(install_dir)

    @pytest.mark.integration
    def test_encrypted_zip_prompts_for_password(
        self, install_dir, fake_transport, make_encrypted_zip, mocker
    ):
        patch_url = "https://cdn.example.org/secret/patch.zip"
        fake_transport.resources[patch_url] = make_encrypted_zip(
            "secret.zip", {"secret.txt": "x" * 100}
        )
        prompt = mocker.Mock(return_value="wrong")

        with pytest.raises(ArchiveEntryError):
            PatchOrchestrator(fake_transport, install_dir, password_prompt=prompt).run(
                [Component("Secret Mod", patch_url)]
            )

        prompt.assert_called_once()
        _assert_no_artifacts(install_dir)


class TestFailures:
    """Fatal errors and cleanup."""

    @pytest.mark.integration
    def test_download_failure_cleans_up(self, install_dir, fake_transport):
        fake_transport.resources.update(
            {
                GAME_VERSION_URL: "1.2.1",
                GAME_PATCH_URL: NetworkError("connection reset", url=GAME_PATCH_URL),
            }
        )

        with pytest.raises(NetworkError):
            PatchOrchestrator(fake_transport, install_dir).run(
                [Component("Base Game", GAME_PATCH_URL, GAME_VERSION_URL, "1.2.0")]
            )
        _assert_no_artifacts(install_dir)

    @pytest.mark.integration
    def test_corrupt_archive_cleans_up(self, install_dir, fake_transport):
        fake_transport.resources[MOD_B_PATCH_URL] = b"<html>not found</html>"

        with pytest.raises(ArchiveFormatError):
            PatchOrchestrator(fake_transport, install_dir).run(
                [Component("Mod B", MOD_B_PATCH_URL)]
            )
        _assert_no_artifacts(install_dir)

    @pytest.mark.integration
    def test_leftover_artifacts_are_removed_first(self, install_dir, fake_transport):
        for name in RESERVED_ARTIFACTS[:3]:
            (install_dir / name).write_bytes(b"leftover")

        PatchOrchestrator(fake_transport, install_dir).run([])

        _assert_no_artifacts(install_dir)


class TestArchiveSelection:
    """Format detection for locators without a suffix."""

    @pytest.mark.integration
    def test_share_link_serving_7z_is_detected(self, install_dir, fake_transport, make_7z):
        locator = "https://drive.usercontent.google.com/download?id=abc&export=download"
        fake_transport.resources[locator] = make_7z("shared.7z", {"from-share.txt": "ok"})

        PatchOrchestrator(fake_transport, install_dir).run([Component("Shared", locator)])

        assert (install_dir / "from-share.txt").read_text() == "ok"


class TestBootstrap:
    """Initial install from full archives when the marker is missing."""

    @pytest.fixture
    def bootstrap_setup(self, fake_transport, make_zip):
        fake_transport.resources.update(
            {
                GAME_INSTALL_URL: make_zip(
                    "full.zip", {"version": "1.2.0", "game.dat": "full 1.2.0"}
                ),
                GAME_VERSION_URL: "1.2.1",
                GAME_PATCH_URL: make_zip("game.zip", {"game.dat": "patched 1.2.1"}),
                MOD_A_VERSION_URL: "1.0.0",
                MOD_A_PATCH_URL: make_zip("mod-a.zip", {"a.txt": "a"}),
            }
        )
        return [
            Component(
                "Base Game",
                GAME_PATCH_URL,
                GAME_VERSION_URL,
                "1.2.0",
                install_url=GAME_INSTALL_URL,
            ),
            Component("Mod A", MOD_A_PATCH_URL, MOD_A_VERSION_URL, "1.0.0"),
        ]

    @pytest.mark.integration
    def test_missing_marker_installs_then_patches(
        self, install_dir, fake_transport, bootstrap_setup
    ):
        orchestrator = PatchOrchestrator(fake_transport, install_dir, install_marker="version")
        assert orchestrator.needs_bootstrap() is True

        report = orchestrator.run(bootstrap_setup)

        assert fake_transport.calls.index(GAME_INSTALL_URL) < fake_transport.calls.index(
            GAME_PATCH_URL
        )
        assert (install_dir / "game.dat").read_text() == "patched 1.2.1"
        assert (install_dir / "version").exists()
        assert report.results[0].installed is True
        assert report.results[1].forced is True
        assert report.components[0].version == "1.2.1"

    @pytest.mark.integration
    def test_present_marker_skips_install(self, install_dir, fake_transport, bootstrap_setup):
        (install_dir / "version").write_text("1.2.0")
        orchestrator = PatchOrchestrator(fake_transport, install_dir, install_marker="version")

        report = orchestrator.run(bootstrap_setup)

        assert not fake_transport.fetched(GAME_INSTALL_URL)
        assert report.results[0].installed is False


class TestProgressAndCheck:
    @pytest.mark.unit
    def test_progress_factory_receives_component_name(
        self, install_dir, fake_transport, make_zip
    ):
        fake_transport.resources[MOD_B_PATCH_URL] = make_zip("mod-b.zip", {"b.txt": "b"})
        seen = []

        @contextmanager
        def factory(description):
            fractions = []
            yield fractions.append
            seen.append((description, fractions))

        PatchOrchestrator(fake_transport, install_dir, progress_factory=factory).run(
            [Component("Mod B", MOD_B_PATCH_URL)]
        )

        assert seen == [("Mod B", [1.0])]

    @pytest.mark.unit
    def test_check_classifies_without_writing(self, install_dir, fake_transport, layered_setup):
        checks = PatchOrchestrator(fake_transport, install_dir).check(layered_setup)

        assert [check.status for _, check in checks] == [
            VersionStatus.OUTDATED,
            VersionStatus.UP_TO_DATE,
            VersionStatus.FORCED_DUE,
        ]
        assert not fake_transport.fetched(GAME_PATCH_URL)
        assert [p.name for p in install_dir.iterdir()] == ["shared.txt"]
