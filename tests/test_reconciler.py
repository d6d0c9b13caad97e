import asyncio
import json
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from extsync.errors import DownloadError, MappingIOError
from extsync.installer import Installer
from extsync.mapping import MappingStore
from extsync.models import ComponentDescriptor, MappingEntry
from extsync.paths import MANIFEST_FILENAME, PathResolver
from extsync.reconciler import Reconciler

NAME = "Fake Component"
IDENTIFIER = "fake.component"
UUID = "fake-component"
VERSION = "1.0.0"
MODIFIERS = [str(i).zfill(2) for i in range(20)]


class FakeFetcher:
    """Writes a small zip instead of downloading; ``fail_urls`` raise DownloadError."""

    def __init__(self, *, fail_urls: set[str] | None = None) -> None:
        self.calls: list[tuple[str, Path]] = []
        self.fail_urls = set(fail_urls or ())

    async def fetch(self, url: str, dest_path: Path) -> None:
        self.calls.append((url, dest_path))
        await asyncio.sleep(0)
        if url in self.fail_urls:
            raise DownloadError(f"HTTP 404 while downloading {url}")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(dest_path, "w") as zf:
            zf.writestr("package.json", json.dumps({"name": "fake", "version": "0.0.1-package"}))
            zf.writestr("index.html", "<html></html>")


def fake_component(*, modifier: str = "", deleted: bool = False, version: str = VERSION, **kwargs) -> ComponentDescriptor:
    return ComponentDescriptor(
        uuid=UUID + modifier,
        deleted=deleted,
        name=NAME + modifier,
        identifier=IDENTIFIER + modifier,
        version=version,
        download_url=kwargs.pop("download_url", "https://example.com/component.zip"),
        **kwargs,
    )


class ReconcilerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        base = Path(self._td.name)
        self.resolver = PathResolver(content_root=base / "Extensions", downloads_root=base / "downloads")
        self.resolver.content_root.mkdir(parents=True)
        self.store = MappingStore(self.resolver.mapping_path)
        self.fetcher = FakeFetcher()
        self.installer = Installer()
        self.reconciler = Reconciler(
            resolver=self.resolver, store=self.store, fetcher=self.fetcher, installer=self.installer
        )

    def tearDown(self) -> None:
        self._td.cleanup()

    def mapping_json(self) -> dict:
        return json.loads(self.resolver.mapping_path.read_text(encoding="utf-8"))

    def content_names(self) -> list[str]:
        return sorted(p.name for p in self.resolver.content_root.iterdir())

    def assert_consistent(self) -> None:
        mapping = self.store.read()
        mapped_dirs = set()
        for uuid, entry in mapping.items():
            install_dir = self.resolver.resolve_location(entry.location)
            self.assertTrue(install_dir.is_dir(), uuid)
            self.assertEqual(self.installer.read_installed_version(install_dir), entry.version)
            mapped_dirs.add(install_dir.name)
        on_disk = {p.name for p in self.resolver.content_root.iterdir() if p.is_dir()}
        self.assertEqual(on_disk, mapped_dirs)


class TestInstallAndUninstall(ReconcilerTestCase):
    async def test_installs_multiple_components(self) -> None:
        outcome = await self.reconciler.submit([fake_component(modifier=m) for m in MODIFIERS])

        self.assertTrue(outcome.ok)
        self.assertEqual({r.action for r in outcome.results}, {"installed"})
        self.assertEqual(self.content_names(), sorted(["mapping.json"] + [IDENTIFIER + m for m in MODIFIERS]))
        self.assertEqual(
            self.mapping_json(),
            {UUID + m: {"location": IDENTIFIER + m, "version": VERSION} for m in MODIFIERS},
        )
        downloads = sorted(p.name for p in self.resolver.downloads_root.iterdir())
        self.assertEqual(downloads, sorted(f"{NAME + m}.zip" for m in MODIFIERS))
        for m in MODIFIERS:
            files = sorted(p.name for p in (self.resolver.content_root / (IDENTIFIER + m)).iterdir())
            self.assertEqual(files, sorted(["index.html", "package.json", MANIFEST_FILENAME]))
        self.assert_consistent()

    async def test_uninstalls_multiple_components(self) -> None:
        await self.reconciler.submit([fake_component(modifier=m) for m in MODIFIERS])

        outcome = await self.reconciler.submit([fake_component(modifier=m, deleted=True) for m in MODIFIERS])

        self.assertTrue(outcome.ok)
        self.assertEqual({r.action for r in outcome.results}, {"uninstalled"})
        self.assertEqual(self.content_names(), ["mapping.json"])
        self.assertEqual(self.mapping_json(), {})

    async def test_uninstall_with_missing_directory_drops_entry(self) -> None:
        await self.reconciler.submit([fake_component()])
        self.installer.uninstall(self.resolver.content_root / IDENTIFIER)

        outcome = await self.reconciler.submit([fake_component(deleted=True)])

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.results[0].action, "uninstalled")
        self.assertEqual(self.mapping_json(), {})

    async def test_deleting_unknown_component_is_a_noop(self) -> None:
        outcome = await self.reconciler.submit([fake_component(deleted=True)])

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.results[0].action, "skipped")
        self.assertFalse(self.resolver.mapping_path.exists())

    async def test_mapping_version_comes_from_descriptor(self) -> None:
        await self.reconciler.submit([fake_component()])

        mapping_version = self.mapping_json()[UUID]["version"]
        package_json = json.loads((self.resolver.content_root / IDENTIFIER / "package.json").read_text(encoding="utf-8"))

        self.assertEqual(mapping_version, VERSION)
        self.assertNotEqual(mapping_version, package_json["version"])


class TestVersionDecisions(ReconcilerTestCase):
    async def test_same_version_is_not_downloaded_again(self) -> None:
        await self.reconciler.submit([fake_component()])
        outcome = await self.reconciler.submit([fake_component()])

        self.assertEqual(outcome.results[0].action, "unchanged")
        self.assertEqual(len(self.fetcher.calls), 1)

    async def test_new_version_updates_install_and_mapping(self) -> None:
        await self.reconciler.submit([fake_component()])
        outcome = await self.reconciler.submit([fake_component(version="1.1.0")])

        self.assertEqual(outcome.results[0].action, "updated")
        self.assertEqual(len(self.fetcher.calls), 2)
        self.assertEqual(self.mapping_json()[UUID], {"location": IDENTIFIER, "version": "1.1.0"})
        self.assert_consistent()

    async def test_autoupdate_disabled_keeps_installed_version(self) -> None:
        await self.reconciler.submit([fake_component()])
        outcome = await self.reconciler.submit([fake_component(version="2.0.0", autoupdate_disabled=True)])

        self.assertEqual(outcome.results[0].action, "unchanged")
        self.assertEqual(len(self.fetcher.calls), 1)
        self.assertEqual(self.mapping_json()[UUID]["version"], VERSION)

    async def test_stale_entry_without_directory_is_reinstalled(self) -> None:
        self.store.write({UUID: MappingEntry(location=IDENTIFIER, version=VERSION)})

        outcome = await self.reconciler.submit([fake_component()])

        self.assertEqual(outcome.results[0].action, "installed")
        self.assertEqual(len(self.fetcher.calls), 1)
        self.assert_consistent()

    async def test_identifier_change_moves_install(self) -> None:
        await self.reconciler.submit([fake_component()])
        moved = ComponentDescriptor(
            uuid=UUID, name=NAME, identifier="fake.renamed", version="2.0.0", download_url="https://example.com/c.zip"
        )

        outcome = await self.reconciler.submit([moved])

        self.assertEqual(outcome.results[0].action, "updated")
        self.assertEqual(self.mapping_json(), {UUID: {"location": "fake.renamed", "version": "2.0.0"}})
        self.assertEqual(self.content_names(), ["fake.renamed", "mapping.json"])


class TestFailures(ReconcilerTestCase):
    async def test_one_bad_download_does_not_affect_others(self) -> None:
        await self.reconciler.submit([fake_component(modifier="99")])
        self.fetcher.fail_urls.add("https://example.com/broken.zip")
        batch = [fake_component(modifier=m) for m in MODIFIERS[:4]]
        batch.insert(2, fake_component(modifier="bad", download_url="https://example.com/broken.zip"))
        batch.append(fake_component(modifier="99", deleted=True))

        outcome = await self.reconciler.submit(batch)

        self.assertEqual(len(outcome.failures), 1)
        self.assertEqual(outcome.failures[0].uuid, UUID + "bad")
        self.assertIn("broken.zip", outcome.failures[0].error)
        self.assertEqual(sorted(self.mapping_json()), sorted(UUID + m for m in MODIFIERS[:4]))
        self.assertFalse((self.resolver.content_root / (IDENTIFIER + "bad")).exists())
        self.assert_consistent()

    async def test_path_escape_fails_only_that_component(self) -> None:
        evil = ComponentDescriptor(
            uuid="evil", name="evil", identifier="../../evil", version="1.0.0", download_url="https://example.com/e.zip"
        )

        outcome = await self.reconciler.submit([evil, fake_component()])

        self.assertEqual([r.action for r in outcome.results], ["failed", "installed"])
        self.assertEqual(len(self.fetcher.calls), 1)
        self.assertEqual(list(self.mapping_json()), [UUID])

    async def test_malicious_download_name_is_never_fetched(self) -> None:
        evil = ComponentDescriptor(
            uuid=UUID, name="../../../outside", identifier=IDENTIFIER, version=VERSION,
            download_url="https://example.com/component.zip",
        )

        outcome = await self.reconciler.submit([evil])

        self.assertEqual(outcome.results[0].action, "failed")
        self.assertEqual(self.fetcher.calls, [])
        self.assertFalse(self.resolver.mapping_path.exists())

    async def test_missing_download_url_is_reported(self) -> None:
        outcome = await self.reconciler.submit([fake_component(download_url=None)])

        self.assertEqual(outcome.results[0].action, "failed")
        self.assertEqual(self.fetcher.calls, [])

    async def test_unreadable_mapping_fails_whole_batch(self) -> None:
        self.resolver.mapping_path.write_text("{broken", encoding="utf-8")

        outcome = await self.reconciler.submit([fake_component(), fake_component(modifier="01")])

        self.assertIsNotNone(outcome.error)
        self.assertEqual(len(outcome.failures), 2)
        self.assertEqual(self.fetcher.calls, [])
        self.assertEqual(self.resolver.mapping_path.read_text(encoding="utf-8"), "{broken")

    async def test_failed_mapping_write_discards_new_installs(self) -> None:
        with patch.object(self.store, "write", side_effect=MappingIOError("disk full")):
            outcome = await self.reconciler.submit([fake_component()])

        self.assertEqual(outcome.error, "disk full")
        self.assertEqual(outcome.results[0].action, "failed")
        self.assertEqual(self.content_names(), [])

    async def test_failed_mapping_write_restores_uninstalled_component(self) -> None:
        await self.reconciler.submit([fake_component()])

        with patch.object(self.store, "write", side_effect=MappingIOError("disk full")):
            outcome = await self.reconciler.submit([fake_component(deleted=True)])

        self.assertEqual(outcome.results[0].action, "failed")
        self.assertEqual(self.mapping_json(), {UUID: {"location": IDENTIFIER, "version": VERSION}})
        self.assertEqual(self.content_names(), [IDENTIFIER, "mapping.json"])
        self.assert_consistent()

    async def test_failed_mapping_write_restores_previous_version(self) -> None:
        await self.reconciler.submit([fake_component()])

        with patch.object(self.store, "write", side_effect=MappingIOError("disk full")):
            outcome = await self.reconciler.submit([fake_component(version="2.0.0")])

        self.assertEqual(outcome.results[0].action, "failed")
        self.assertEqual(self.installer.read_installed_version(self.resolver.content_root / IDENTIFIER), VERSION)
        self.assertEqual(self.content_names(), [IDENTIFIER, "mapping.json"])
        self.assert_consistent()

    async def test_failed_mapping_write_restores_old_location(self) -> None:
        await self.reconciler.submit([fake_component()])
        moved = ComponentDescriptor(
            uuid=UUID, name=NAME, identifier="fake.renamed", version="2.0.0", download_url="https://example.com/c.zip"
        )

        with patch.object(self.store, "write", side_effect=MappingIOError("disk full")):
            await self.reconciler.submit([moved])

        self.assertEqual(self.content_names(), [IDENTIFIER, "mapping.json"])
        self.assert_consistent()

    async def test_failed_mapping_write_with_mixed_batch(self) -> None:
        await self.reconciler.submit([fake_component(modifier=m) for m in MODIFIERS[:2]])
        batch = [
            fake_component(modifier=MODIFIERS[0], deleted=True),
            fake_component(modifier=MODIFIERS[1], version="3.0.0"),
            fake_component(modifier=MODIFIERS[2]),
        ]

        with patch.object(self.store, "write", side_effect=MappingIOError("disk full")):
            outcome = await self.reconciler.submit(batch)

        self.assertEqual(len(outcome.failures), 3)
        self.assertEqual(sorted(self.mapping_json()), sorted(UUID + m for m in MODIFIERS[:2]))
        self.assertEqual(self.content_names(), sorted([IDENTIFIER + m for m in MODIFIERS[:2]] + ["mapping.json"]))
        self.assert_consistent()

    async def test_identifier_naming_the_mapping_file_is_rejected(self) -> None:
        await self.reconciler.submit([fake_component()])
        before = self.mapping_json()

        for bad in ("./mapping.json", "x/../mapping.json", "mapping.json/"):
            hostile = ComponentDescriptor(
                uuid="hostile", name="hostile", identifier=bad, version="1.0.0", download_url="https://example.com/h.zip"
            )
            outcome = await self.reconciler.submit([hostile])
            self.assertEqual(outcome.results[0].action, "failed", bad)

        self.assertTrue(self.resolver.mapping_path.is_file())
        self.assertEqual(self.mapping_json(), before)
        self.assertEqual(len(self.fetcher.calls), 1)
        outcome = await self.reconciler.submit([fake_component(modifier="01")])
        self.assertTrue(outcome.ok)

    async def test_missing_identifier_fails_without_fetch(self) -> None:
        outcome = await self.reconciler.submit([ComponentDescriptor(uuid="nameless", download_url="https://x/a.zip")])

        self.assertEqual(outcome.results[0].action, "failed")
        self.assertIn("identifier or version", outcome.results[0].error)
        self.assertEqual(self.fetcher.calls, [])


class TestSharedContentRoot(ReconcilerTestCase):
    async def test_updating_does_not_touch_similarly_named_component(self) -> None:
        other = ComponentDescriptor(
            uuid="other", name="Other", identifier=IDENTIFIER + ".extsync-backup", version=VERSION,
            download_url="https://example.com/other.zip",
        )
        await self.reconciler.submit([fake_component(), other])

        outcome = await self.reconciler.submit([fake_component(version="2.0.0")])

        self.assertTrue(outcome.ok)
        self.assertTrue((self.resolver.content_root / (IDENTIFIER + ".extsync-backup")).is_dir())
        self.assertEqual(self.content_names(), sorted([IDENTIFIER, IDENTIFIER + ".extsync-backup", "mapping.json"]))
        self.assert_consistent()

    async def test_uninstall_and_reinstall_of_same_identifier_in_one_batch(self) -> None:
        await self.reconciler.submit([fake_component()])
        successor = ComponentDescriptor(
            uuid="successor", name="Successor", identifier=IDENTIFIER, version="5.0.0",
            download_url="https://example.com/s.zip",
        )

        outcome = await self.reconciler.submit([fake_component(deleted=True), successor])

        self.assertEqual([r.action for r in outcome.results], ["uninstalled", "installed"])
        self.assertEqual(self.mapping_json(), {"successor": {"location": IDENTIFIER, "version": "5.0.0"}})
        self.assertEqual(self.content_names(), [IDENTIFIER, "mapping.json"])
        self.assert_consistent()


class TestConcurrentBatches(ReconcilerTestCase):
    async def test_concurrent_identical_batches_download_once(self) -> None:
        outcomes = await asyncio.gather(*(self.reconciler.submit([fake_component()]) for _ in range(5)))

        self.assertEqual(len(self.fetcher.calls), 1)
        self.assertEqual([o.results[0].action for o in outcomes], ["installed"] + ["unchanged"] * 4)
        self.assert_consistent()

    async def test_install_install_delete_downloads_once(self) -> None:
        await asyncio.gather(
            self.reconciler.submit([fake_component()]),
            self.reconciler.submit([fake_component()]),
            self.reconciler.submit([fake_component(deleted=True)]),
        )

        self.assertEqual(len(self.fetcher.calls), 1)
        # Batches run in arrival order, so the deletion is applied last.
        self.assertEqual(self.mapping_json(), {})
        self.assert_consistent()

    async def test_later_batch_sees_earlier_batch_changes(self) -> None:
        await asyncio.gather(
            self.reconciler.submit([fake_component(modifier=m) for m in MODIFIERS[:3]]),
            self.reconciler.submit([fake_component(modifier=m, deleted=True) for m in MODIFIERS[:2]]),
            self.reconciler.submit([fake_component(modifier=m) for m in MODIFIERS[2:5]]),
        )

        self.assertEqual(sorted(self.mapping_json()), sorted(UUID + m for m in MODIFIERS[2:5]))
        self.assertEqual(len(self.fetcher.calls), 5)
        self.assert_consistent()


if __name__ == "__main__":
    unittest.main()
