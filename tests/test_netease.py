import os
import unittest
from unittest import mock

import httpx

from lib.errors import NotConfiguredError, UpstreamFormatError, UpstreamUnavailableError
from lib.platforms.models import ContentType, Platform, ResolvedLink
from lib.platforms.netease import NeteaseAdapter, check_api_reachability, extract_playlist_id


def _song(i):
    return {
        "id": i,
        "name": f"Song {i}",
        "ar": [{"name": "Artist A"}, {"name": "Artist B"}],
        "al": {"id": 900 + i, "name": f"Album {i}", "picUrl": f"http://p1.music.126.net/{i}.jpg"},
    }


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


@mock.patch.dict(os.environ, {"NETEASE_API_URL": "netease.test"})
class NeteasePlaylistTests(unittest.IsolatedAsyncioTestCase):
    def _handler(self, ids, failing_chunks=(), stubs=None):
        def handler(request):
            self.assertEqual(request.url.host, "netease.test")
            self.assertIn("os=pc", request.headers.get("cookie", ""))
            if request.url.path == "/playlist/detail":
                return httpx.Response(200, json={
                    "code": 200,
                    "playlist": {"trackIds": [{"id": i} for i in ids], "tracks": stubs or []},
                })
            if request.url.path == "/song/detail":
                chunk = request.url.params["ids"]
                if chunk in failing_chunks:
                    return httpx.Response(502, text="bad gateway")
                return httpx.Response(200, json={
                    "code": 200,
                    "songs": [_song(int(i)) for i in chunk.split(",") if int(i) != 404],
                })
            return httpx.Response(404)
        return handler

    async def test_failed_chunk_is_dropped_and_order_kept(self):
        adapter = NeteaseAdapter(chunk_size=2, concurrency=3)
        handler = self._handler([1, 2, 3, 4, 5, 6], failing_chunks={"3,4"})
        async with _client(handler) as client:
            records = await adapter.fetch_playlist("https://music.163.com/playlist?id=77", client=client)

        self.assertEqual([r.platform_track_id for r in records], ["1", "2", "5", "6"])
        first = records[0]
        self.assertEqual(first.name, "Song 1")
        self.assertEqual(first.artist_name, "Artist A, Artist B")
        self.assertEqual(first.album_name, "Album 1")
        self.assertEqual(first.picture_url, "https://p1.music.126.net/1.jpg")
        self.assertEqual(first.original_link, "https://music.163.com/song?id=1")
        self.assertEqual(first.platform_album_id, "901")

    async def test_every_chunk_failing_fails_the_playlist(self):
        adapter = NeteaseAdapter(chunk_size=2)
        handler = self._handler([1, 2, 3], failing_chunks={"1,2", "3"})
        async with _client(handler) as client:
            with self.assertRaises(UpstreamUnavailableError):
                await adapter.fetch_playlist("77", client=client)

    async def test_id_missing_from_detail_falls_back_to_playlist_stub(self):
        adapter = NeteaseAdapter(chunk_size=50)
        stub = {"id": 404, "name": "Stub Song", "ar": [{"name": "S"}], "al": {"name": "Stub Album", "picUrl": "https://x/s.jpg"}}
        handler = self._handler([1, 404], stubs=[stub])
        async with _client(handler) as client:
            records = await adapter.fetch_playlist("77", client=client)
        self.assertEqual([r.name for r in records], ["Song 1", "Stub Song"])
        self.assertEqual(records[1].album_name, "Stub Album")

    async def test_refused_playlist_surfaces_upstream_code(self):
        def handler(request):
            return httpx.Response(200, json={"code": 401, "msg": "private"})

        async with _client(handler) as client:
            with self.assertRaises(UpstreamUnavailableError) as ctx:
                await NeteaseAdapter().fetch_playlist("77", client=client)
        self.assertEqual(ctx.exception.meta["code"], 401)
        self.assertIn("private", ctx.exception.snippet)

    async def test_empty_playlist_is_format_error(self):
        async with _client(self._handler([])) as client:
            with self.assertRaises(UpstreamFormatError):
                await NeteaseAdapter().fetch_playlist("77", client=client)


@mock.patch.dict(os.environ, {"NETEASE_API_URL": "https://netease.test/"})
class NeteaseSingleItemTests(unittest.IsolatedAsyncioTestCase):
    async def test_track(self):
        def handler(request):
            self.assertEqual(request.url.path, "/song/detail")
            return httpx.Response(200, json={"code": 200, "songs": [_song(42)]})

        async with _client(handler) as client:
            records = await NeteaseAdapter().fetch(
                ResolvedLink(Platform.NETEASE, ContentType.TRACK, "42"), client=client
            )
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].platform_track_id, "42")

    async def test_album_imports_flagship_track(self):
        payload = {
            "code": 200,
            "album": {"id": 7, "name": "Album Seven", "picUrl": "http://p.test/7.jpg", "artist": {"name": "Band"}},
            "songs": [{"id": 71, "name": "Opener"}, {"id": 72, "name": "Closer"}],
        }
        async with _client(lambda r: httpx.Response(200, json=payload)) as client:
            record = await NeteaseAdapter().fetch_track_or_album(ContentType.ALBUM, "7", client=client)
        self.assertEqual(record.name, "Opener")
        self.assertEqual(record.platform_track_id, "71")
        self.assertEqual(record.album_name, "Album Seven")
        self.assertEqual(record.artist_name, "Band")
        self.assertEqual(record.picture_url, "https://p.test/7.jpg")
        self.assertEqual(record.platform_album_id, "7")

    async def test_track_without_songs_is_format_error(self):
        async with _client(lambda r: httpx.Response(200, json={"code": 200, "songs": []})) as client:
            with self.assertRaises(UpstreamFormatError) as ctx:
                await NeteaseAdapter().fetch_track_or_album(ContentType.TRACK, "1", client=client)
        self.assertIn("songs", ctx.exception.snippet)

    async def test_missing_api_url_is_not_configured(self):
        with mock.patch.dict(os.environ, {"NETEASE_API_URL": ""}):
            with self.assertRaises(NotConfiguredError):
                await NeteaseAdapter().fetch_track_or_album(ContentType.TRACK, "1")


class PlaylistIdTests(unittest.TestCase):
    def test_extract_playlist_id(self):
        self.assertEqual(extract_playlist_id("123"), "123")
        self.assertEqual(extract_playlist_id("https://music.163.com/#/playlist?id=55&userid=2"), "55")
        self.assertEqual(extract_playlist_id("https://y.music.163.com/m/playlist/66"), "66")
        with self.assertRaises(UpstreamFormatError):
            extract_playlist_id("https://music.163.com/")


class ReachabilityCheckTests(unittest.IsolatedAsyncioTestCase):
    async def test_not_configured(self):
        with mock.patch.dict(os.environ, {"NETEASE_API_URL": ""}):
            result = await check_api_reachability()
        self.assertFalse(result["configured"])
        self.assertFalse(result["reachable"])
        self.assertIn("NETEASE_API_URL", result["hint"])

    @mock.patch.dict(os.environ, {"NETEASE_API_URL": "netease.test"})
    async def test_reachable_reports_status(self):
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            return httpx.Response(503, text="waking up")

        async with _client(handler) as client:
            result = await check_api_reachability(client=client)
        self.assertEqual(hosts, ["netease.test"])
        self.assertEqual(
            {k: result[k] for k in ("configured", "host", "reachable", "status")},
            {"configured": True, "host": "netease.test", "reachable": True, "status": 503},
        )

    @mock.patch.dict(os.environ, {"NETEASE_API_URL": "https://netease.test"})
    async def test_connection_failure_is_reported_not_raised(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            result = await check_api_reachability(client=client)
        self.assertTrue(result["configured"])
        self.assertFalse(result["reachable"])
        self.assertIn("ConnectError", result["error"])
        self.assertNotIn("status", result)


if __name__ == "__main__":
    unittest.main()
