from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.sql.expression import Executable

from src.bookkeeping.config import SeedConfig
from src.db.migrations import Statement
from src.db.models import Category, User, Vendor
from src.db.upsert import upsert_statement
from src.utils.time import utcnow

# (email, full_name, role)
DEMO_USERS: list[tuple[str, str, str]] = [
    ("admin@example.com", "Admin", "admin"),
    ("accountant@example.com", "Accountant", "accountant"),
]

# (code, name_th, name_en, type): Thai-friendly baseline for P&L and VAT.
CATEGORIES: list[tuple[str, str, str, str]] = [
    # Income
    ("REV_SALES", "รายได้จากการขาย", "Sales revenue", "income"),
    ("REV_SERVICE", "รายได้จากการให้บริการ", "Service revenue", "income"),
    ("REV_INTEREST", "ดอกเบี้ยรับ", "Interest income", "income"),
    # COGS
    ("COGS_PURCHASE", "ต้นทุนขาย / ซื้อสินค้า", "COGS / Purchases", "cogs"),
    ("COGS_SHIPPING_IN", "ค่าขนส่งเข้า (ต้นทุน)", "Inbound shipping (COGS)", "cogs"),
    # Operating expenses
    ("EXP_RENT", "ค่าเช่า", "Rent expense", "expense"),
    ("EXP_UTIL", "ค่าสาธารณูปโภค", "Utilities", "expense"),
    ("EXP_INTERNET_PHONE", "ค่าอินเทอร์เน็ต/โทรศัพท์", "Internet/Phone", "expense"),
    ("EXP_SALARY", "เงินเดือนและค่าจ้าง", "Salaries & wages", "expense"),
    ("EXP_SOCIAL", "ประกันสังคม/สวัสดิการพนักงาน", "Employee benefits", "expense"),
    ("EXP_OFFICE_SUPPLIES", "ค่าวัสดุสำนักงาน", "Office supplies", "expense"),
    ("EXP_EQUIPMENT", "ค่าอุปกรณ์/เครื่องใช้สำนักงาน", "Office equipment", "expense"),
    ("EXP_TRAVEL", "ค่าเดินทาง", "Travel", "expense"),
    ("EXP_MEALS_ENT", "ค่าอาหารและรับรอง", "Meals & entertainment", "expense"),
    ("EXP_MARKETING", "ค่าโฆษณาและการตลาด", "Marketing", "expense"),
    ("EXP_PROF_FEES", "ค่าที่ปรึกษา/ค่าบริการวิชาชีพ", "Professional fees", "expense"),
    ("EXP_REPAIR", "ค่าซ่อมแซมบำรุงรักษา", "Repairs & maintenance", "expense"),
    ("EXP_BANK_FEE", "ค่าธรรมเนียมธนาคาร", "Bank fees", "expense"),
    ("EXP_OTHER", "ค่าใช้จ่ายอื่นๆ", "Other expenses", "expense"),
    # Tax (VAT / WHT)
    ("TAX_VAT_IN", "ภาษีซื้อ (VAT Input)", "VAT input", "tax"),
    ("TAX_VAT_OUT", "ภาษีขาย (VAT Output)", "VAT output", "tax"),
    ("TAX_WHT", "ภาษีหัก ณ ที่จ่าย", "Withholding tax", "tax"),
]

# (name, name_th, name_en, default category code)
VENDORS: list[tuple[str, str, str, str]] = [
    ("7-Eleven", "7-Eleven", "7-Eleven", "EXP_MEALS_ENT"),
    ("Grab", "แกร็บ", "Grab", "EXP_TRAVEL"),
    ("LINE MAN", "ไลน์แมน", "LINE MAN", "EXP_MEALS_ENT"),
    ("Shopee", "ช้อปปี้", "Shopee", "EXP_OFFICE_SUPPLIES"),
    ("Lazada", "ลาซาด้า", "Lazada", "EXP_OFFICE_SUPPLIES"),
    ("PEA", "การไฟฟ้าส่วนภูมิภาค", "Provincial Electricity Authority", "EXP_UTIL"),
    ("MEA", "การไฟฟ้านครหลวง", "Metropolitan Electricity Authority", "EXP_UTIL"),
    ("TRUE", "ทรู", "TRUE", "EXP_INTERNET_PHONE"),
    ("AIS", "เอไอเอส", "AIS", "EXP_INTERNET_PHONE"),
]


def _user_statement(email: str, full_name: str, role: str) -> Statement:
    table = User.__table__

    def build(conn: Connection) -> Optional[Executable]:
        return upsert_statement(
            table,
            {"email": email, "full_name": full_name, "role": role, "is_active": True, "updated_at": utcnow()},
            key=["email"],
            update=["full_name", "role", "is_active", "updated_at"],
            dialect_name=conn.dialect.name,
        )

    return Statement(label=f"seed user {email}", build=build)


def _category_statement(code: str, name_th: str, name_en: str, type_: str) -> Statement:
    table = Category.__table__

    def build(conn: Connection) -> Optional[Executable]:
        return upsert_statement(
            table,
            {"code": code, "name_th": name_th, "name_en": name_en, "type": type_},
            key=["code"],
            update=["name_th", "name_en", "type"],
            dialect_name=conn.dialect.name,
        )

    return Statement(label=f"seed category {code}", build=build)


def _vendor_statement(name: str, name_th: str, name_en: str, category_code: str) -> Statement:
    table = Vendor.__table__
    categories = Category.__table__

    def build(conn: Connection) -> Optional[Executable]:
        # Resolved at apply time; NULL if the category row is missing.
        category_id = (
            select(categories.c.id).where(categories.c.code == category_code).limit(1).scalar_subquery()
        )
        return upsert_statement(
            table,
            {"name": name, "name_th": name_th, "name_en": name_en, "default_category_id": category_id},
            key=["name"],
            update=["name_th", "name_en", "default_category_id"],
            dialect_name=conn.dialect.name,
        )

    return Statement(label=f"seed vendor {name}", build=build)


def seed_statements(config: Optional[SeedConfig] = None) -> list[Statement]:
    cfg = config or SeedConfig()
    if not cfg.enabled:
        return []
    out: list[Statement] = []
    if cfg.demo_users:
        out.extend(_user_statement(*u) for u in DEMO_USERS)
    if cfg.categories:
        out.extend(_category_statement(*c) for c in CATEGORIES)
    if cfg.vendors:
        out.extend(_vendor_statement(*v) for v in VENDORS)
    return out
