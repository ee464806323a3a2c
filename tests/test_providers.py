import os
from unittest import TestCase

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

from filecdn.storage.providers import (  # noqa: E402
    DEFAULT_PROVIDER,
    MB,
    PROVIDER_TABLE,
    ProviderSpec,
    category_for,
    get_provider_spec,
    select_provider,
)


class CategoryTests(TestCase):
    def test_major_types(self):
        self.assertEqual(category_for("image/png"), "image")
        self.assertEqual(category_for("VIDEO/mp4"), "video")
        self.assertEqual(category_for("audio/mpeg"), "audio")
        self.assertEqual(category_for("application/pdf"), "raw")
        self.assertEqual(category_for("text/plain"), "raw")
        self.assertEqual(category_for(None), "raw")


class SelectProviderTests(TestCase):
    def test_media_goes_to_first_media_cdn(self):
        self.assertEqual(select_provider("image/jpeg", 2 * MB), "cloudinary")
        self.assertEqual(select_provider("audio/mpeg", 80 * MB), "cloudinary")

    def test_small_text_goes_to_object_store(self):
        self.assertEqual(select_provider("text/plain", 10), "supabase")

    def test_too_big_for_everyone_yields_default(self):
        self.assertEqual(select_provider("video/mp4", 500 * MB), DEFAULT_PROVIDER)
        self.assertEqual(select_provider("application/zip", 60 * MB), DEFAULT_PROVIDER)

    def test_same_inputs_same_answer(self):
        picks = {select_provider("image/webp", 30 * MB) for _ in range(20)}
        self.assertEqual(len(picks), 1)

    def test_custom_table_respects_priority_not_order(self):
        table = (
            ProviderSpec("turso", "serverless-sql-b", 5, 5 * MB, frozenset({"any"})),
            ProviderSpec("neon", "serverless-sql-a", 4, 10 * MB, frozenset({"any"})),
        )
        self.assertEqual(select_provider("text/plain", 1 * MB, table=table), "neon")
        self.assertEqual(select_provider("text/plain", 20 * MB, table=table), DEFAULT_PROVIDER)

    def test_table_lookup(self):
        self.assertEqual([p.id for p in PROVIDER_TABLE], ["cloudinary", "imagekit", "supabase", "neon", "turso"])
        self.assertEqual(get_provider_spec("imagekit").max_size, 25 * MB)
        self.assertIsNone(get_provider_spec("dropbox"))
