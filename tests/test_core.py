import functools
import os
import unittest
from unittest import mock

import httpx

import core
from lib.errors import (
    InvalidInputError,
    NotFoundError,
    StorageFatalError,
    UnrecognizedLinkError,
    UnsupportedContentTypeError,
    UpstreamUnavailableError,
)
from lib.retry import with_storage_retry
from lib.storage import ALBUM_COVERS, InMemoryStorage, StaticIdentity

LYRICS = {
    "1": {"code": 200, "lrc": {"lyric": "[ar:Someone]\n[00:01.00]作词 : Someone\n[00:02.00]Hello\n[00:03.00]World"}},
    "3": {"code": 200, "nolyric": True},
    "71": {"code": 200, "lrc": {"lyric": "[00:01.00]Opening line"}},
}


def _song(i, picture=True):
    return {
        "id": i,
        "name": f"Song {i}",
        "ar": [{"name": "Artist"}],
        "al": {"id": 900 + i, "name": f"Album {i}", "picUrl": f"http://p.test/{i}.jpg" if picture else ""},
    }


class FakeNetease:
    """NeteaseCloudMusicApi plus the cover CDN, routed by path."""

    def __init__(self, playlist_ids=(1, 2, 3), no_picture=()):
        self.playlist_ids = list(playlist_ids)
        self.no_picture = set(no_picture)
        self.paths = []

    def __call__(self, request):
        self.paths.append(request.url.path)
        if request.url.host == "p.test":
            return httpx.Response(200, content=b"jpeg-bytes", headers={"content-type": "image/jpeg"})
        path = request.url.path
        if path == "/playlist/detail":
            return httpx.Response(200, json={
                "code": 200, "playlist": {"trackIds": [{"id": i} for i in self.playlist_ids]},
            })
        if path == "/song/detail":
            ids = [int(i) for i in request.url.params["ids"].split(",")]
            return httpx.Response(200, json={
                "code": 200, "songs": [_song(i, picture=i not in self.no_picture) for i in ids],
            })
        if path == "/lyric":
            song_id = request.url.params["id"]
            if song_id in LYRICS:
                return httpx.Response(200, json=LYRICS[song_id])
            return httpx.Response(502, text="bad gateway")
        if path == "/album":
            return httpx.Response(200, json={
                "code": 200,
                "album": {"id": 7, "name": "Album Seven", "picUrl": "http://p.test/7.jpg", "artist": {"name": "Band"}},
                "songs": [{"id": 71, "name": "Opener"}, {"id": 72, "name": "Closer"}],
            })
        return httpx.Response(404)


class FailingStorage(InMemoryStorage):
    def __init__(self, fail_albums):
        super().__init__()
        self.fail_albums = set(fail_albums)

    async def create(self, collection, record):
        if record.get("album_name") in self.fail_albums:
            raise ValueError("constraint violation")
        return await super().create(collection, record)


class UnreachableStorage(InMemoryStorage):
    """Stops answering once ``down_from`` album is written."""

    def __init__(self, down_from):
        super().__init__()
        self.down_from = down_from
        self.down = False
        self.attempted = []

    async def create(self, collection, record):
        self.attempted.append(record.get("album_name"))
        if record.get("album_name") == self.down_from:
            self.down = True
        if self.down:
            raise ConnectionRefusedError("connect ECONNREFUSED 10.0.0.5:5432")
        return await super().create(collection, record)


async def _no_sleep(delay):
    return None


class RecordingBlobStore:
    def __init__(self):
        self.saved = []

    async def save(self, data, suggested_name):
        self.saved.append((data, suggested_name))
        return f"/albums/{suggested_name}"


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


@mock.patch.dict(os.environ, {"NETEASE_API_URL": "https://netease.test"})
class ImportFromLinkTests(unittest.IsolatedAsyncioTestCase):
    async def test_playlist_rows_carry_metadata_and_lyrics(self):
        storage = InMemoryStorage()
        async with _client(FakeNetease()) as client:
            result = await core.import_from_link(
                "分享歌单 https://music.163.com/playlist?id=77 (来自@网易云音乐)",
                "cat-1",
                storage=storage,
                user_id="u1",
                client=client,
            )

        self.assertEqual(result.imported_count, 3)
        self.assertEqual(result.failed_count, 0)
        self.assertEqual(result.to_dict()["contentType"], "playlist")
        rows = {r["song_name"]: r for r in await storage.find_many(ALBUM_COVERS)}
        self.assertEqual(rows["Song 1"]["lyrics"], "Hello\nWorld")
        self.assertEqual(rows["Song 1"]["song_id"], "1")
        self.assertEqual(rows["Song 1"]["album_id"], "901")
        self.assertEqual(rows["Song 1"]["image_url"], "https://p.test/1.jpg")
        self.assertEqual(rows["Song 1"]["category_id"], "cat-1")
        self.assertEqual(rows["Song 1"]["user_id"], "u1")
        # lyrics failures never block the import
        self.assertIsNone(rows["Song 2"]["lyrics"])
        self.assertIsNone(rows["Song 3"]["lyrics"])
        self.assertEqual(sorted(result.track_ids), sorted(r["id"] for r in rows.values()))

    async def test_tracks_without_cover_are_skipped(self):
        storage = InMemoryStorage()
        async with _client(FakeNetease(no_picture={2})) as client:
            result = await core.import_from_link(
                "https://music.163.com/playlist?id=77", storage=storage, client=client, with_lyrics=False
            )
        self.assertEqual((result.imported_count, result.skipped_count), (2, 1))

    async def test_partial_storage_failure_is_counted(self):
        storage = FailingStorage({"Album 2"})
        async with _client(FakeNetease()) as client:
            result = await core.import_from_link(
                "https://music.163.com/playlist?id=77", storage=storage, client=client, with_lyrics=False
            )
        self.assertEqual((result.imported_count, result.failed_count), (2, 1))
        self.assertEqual(len(await storage.find_many(ALBUM_COVERS)), 2)

    async def test_unreachable_storage_abandons_remaining_rows(self):
        storage = UnreachableStorage(down_from="Album 2")
        fast_retry = functools.partial(with_storage_retry, sleep=_no_sleep)
        with mock.patch.object(core, "with_storage_retry", fast_retry):
            async with _client(FakeNetease(playlist_ids=[1, 2, 3, 4])) as client:
                result = await core.import_from_link(
                    "https://music.163.com/playlist?id=77", storage=storage, client=client, with_lyrics=False
                )
        self.assertEqual((result.imported_count, result.failed_count), (1, 3))
        # Album 2 used its full retry budget; Albums 3 and 4 were never attempted
        self.assertEqual(storage.attempted, ["Album 1"] + ["Album 2"] * 4)

    async def test_every_write_failing_raises(self):
        storage = FailingStorage({"Album 1", "Album 2", "Album 3"})
        async with _client(FakeNetease()) as client:
            with self.assertRaises(StorageFatalError):
                await core.import_from_link(
                    "https://music.163.com/playlist?id=77", storage=storage, client=client, with_lyrics=False
                )

    async def test_album_import_mirrors_cover_and_keeps_album_id(self):
        storage = InMemoryStorage()
        blobs = RecordingBlobStore()
        async with _client(FakeNetease()) as client:
            result = await core.import_from_link(
                "https://music.163.com/album?id=7", storage=storage, blob_store=blobs, client=client
            )
        self.assertEqual(result.imported_count, 1)
        row = (await storage.find_many(ALBUM_COVERS))[0]
        self.assertEqual(row["image_url"], "/albums/netease-7.jpg")
        self.assertEqual(blobs.saved, [(b"jpeg-bytes", "netease-7.jpg")])
        self.assertEqual(row["album_id"], "7")
        self.assertEqual(row["song_id"], "71")
        self.assertEqual(row["lyrics"], "Opening line")
        self.assertEqual(row["artist_name"], "Band")

    async def test_unrecognized_link(self):
        with self.assertRaises(UnrecognizedLinkError):
            await core.import_from_link("no link here at all", storage=InMemoryStorage())

    async def test_unsupported_content_type_fails_before_fetching(self):
        handler = FakeNetease()
        async with _client(handler) as client:
            with self.assertRaises(UnsupportedContentTypeError):
                await core.import_from_link(
                    "https://y.qq.com/n/ryqq/songDetail/0039MnYb0qxYhV", storage=InMemoryStorage(), client=client
                )
        self.assertEqual(handler.paths, [])


class ResolveAndImportTests(unittest.IsolatedAsyncioTestCase):
    async def test_errors_become_payloads(self):
        payload = await core.resolve_and_import(
            "hello", storage=InMemoryStorage(), identity=StaticIdentity(None)
        )
        self.assertEqual(payload["errorCode"], "unrecognized_link")
        self.assertTrue(payload["message"])

    @mock.patch.dict(os.environ, {"NETEASE_API_URL": "https://netease.test"})
    async def test_success_payload(self):
        async with _client(FakeNetease(playlist_ids=[1])) as client:
            payload = await core.resolve_and_import(
                "https://music.163.com/playlist?id=77",
                storage=InMemoryStorage(),
                identity=StaticIdentity("u1"),
                client=client,
            )
        self.assertEqual(payload["importedCount"], 1)
        self.assertEqual(payload["platform"], "netease")
        self.assertEqual(len(payload["trackIds"]), 1)


@mock.patch.dict(os.environ, {"NETEASE_API_URL": "https://netease.test"})
class BackfillTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.storage = InMemoryStorage()
        self.by_song = await self.storage.create(ALBUM_COVERS, {"album_name": "A", "lyrics": None, "song_id": "1"})
        self.no_lyric = await self.storage.create(ALBUM_COVERS, {"album_name": "C", "lyrics": None, "song_id": "3"})
        self.by_album = await self.storage.create(
            ALBUM_COVERS, {"album_name": "B", "lyrics": None, "song_id": None, "album_id": "7"}
        )
        self.done = await self.storage.create(ALBUM_COVERS, {"album_name": "D", "lyrics": "kept", "song_id": "1"})

    async def test_two_passes(self):
        async with _client(FakeNetease()) as client:
            summary = await core.backfill_lyrics(self.storage, client=client)

        self.assertEqual(summary["total_by_song"], 2)
        self.assertEqual(summary["updated_by_song"], 1)
        self.assertEqual(summary["total_by_album"], 1)
        self.assertEqual(summary["updated_by_album"], 1)
        self.assertEqual((summary["total"], summary["updated"]), (3, 2))

        by_album = await self.storage.find_first(ALBUM_COVERS, {"id": self.by_album["id"]})
        self.assertEqual(by_album["lyrics"], "Opening line")
        self.assertEqual((by_album["song_id"], by_album["song_name"]), ("71", "Opener"))
        no_lyric = await self.storage.find_first(ALBUM_COVERS, {"id": self.no_lyric["id"]})
        self.assertIsNone(no_lyric["lyrics"])
        done = await self.storage.find_first(ALBUM_COVERS, {"id": self.done["id"]})
        self.assertEqual(done["lyrics"], "kept")

    async def test_refresh_from_album(self):
        async with _client(FakeNetease()) as client:
            item = await core.refresh_lyrics_from_album(self.storage, self.done["id"], " 7 ", None, client=client)
        self.assertEqual(item["lyrics"], "Opening line")
        self.assertEqual(item["album_id"], "7")
        stored = await self.storage.find_first(ALBUM_COVERS, {"id": self.done["id"]})
        self.assertEqual(stored["song_id"], "71")

    async def test_refresh_missing_item(self):
        async with _client(FakeNetease()) as client:
            with self.assertRaises(NotFoundError):
                await core.refresh_lyrics_from_album(self.storage, "missing", "7", None, client=client)

    async def test_refresh_other_users_item_is_not_found(self):
        async with _client(FakeNetease()) as client:
            with self.assertRaises(NotFoundError):
                await core.refresh_lyrics_from_album(self.storage, self.done["id"], "7", "someone-else", client=client)

    async def test_refresh_album_without_lyrics(self):
        def handler(request):
            if request.url.path == "/album":
                return httpx.Response(200, json={"code": 200, "songs": [{"id": 3, "name": "Quiet"}]})
            return httpx.Response(200, json=LYRICS["3"])

        async with _client(handler) as client:
            with self.assertRaises(UpstreamUnavailableError):
                await core.refresh_lyrics_from_album(self.storage, self.done["id"], "8", None, client=client)


@mock.patch.dict(os.environ, {"NETEASE_API_URL": "https://netease.test"})
class SongSearchTests(unittest.IsolatedAsyncioTestCase):
    async def test_blank_keywords_and_unknown_mode_are_rejected(self):
        with self.assertRaises(InvalidInputError):
            await core.search_songs("   ")
        with self.assertRaises(InvalidInputError):
            await core.search_songs("晴天", mode="album")

    async def test_song_mode_searches_by_name(self):
        def handler(request):
            self.assertEqual(request.url.params["type"], "1")
            self.assertEqual(request.url.params["keywords"], "Song 4")
            return httpx.Response(200, json={"result": {"songs": [_song(4)]}})

        async with _client(handler) as client:
            results = await core.search_songs(" Song 4 ", mode="song", client=client)
        self.assertEqual([(m.id, m.album_name) for m in results], [("4", "Album 4")])

    async def test_song_lyrics(self):
        async with _client(FakeNetease()) as client:
            self.assertEqual(await core.get_song_lyrics("1", client=client), "Hello\nWorld")
            self.assertEqual(await core.get_song_lyrics("3", client=client), "")
        with self.assertRaises(InvalidInputError):
            await core.get_song_lyrics("12a")


if __name__ == "__main__":
    unittest.main()
