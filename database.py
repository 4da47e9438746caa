"""
MongoDB connection

`db` is None when DATABASE_URL / DATABASE_NAME are not set; callers fall back
to the in-memory store in that case. Decimal values are stored as Decimal128.
"""
import os
from decimal import Decimal

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from pymongo import ASCENDING, MongoClient


class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


codec_options = CodecOptions(type_registry=TypeRegistry([DecimalCodec()]), tz_aware=True)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client.get_database(DATABASE_NAME, codec_options=codec_options)


def ensure_indexes(database) -> None:
    database["discount_code"].create_index([("code", ASCENDING)], unique=True)
    database["webhook_event"].create_index([("event_id", ASCENDING)], unique=True)
    database["order"].create_index([("paystack_reference", ASCENDING)], unique=True, sparse=True)
    database["discount_redemption"].create_index(
        [("code", ASCENDING), ("user_id", ASCENDING)], unique=True
    )
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("session_token", ASCENDING)])

