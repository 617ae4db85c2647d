from datetime import date

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from core.models import Branch
from inventory.ledger import receive_stock, sellable_quantity
from inventory.models import Product

DEMO_BRANCHES = [
    (settings.HEAD_OFFICE_BRANCH_CODE, "Head Office", "Dar es Salaam"),
    ("BR001", "Kariakoo Branch", "Kariakoo, Dar es Salaam"),
    ("BR002", "Mikocheni Branch", "Mikocheni, Dar es Salaam"),
]

DEMO_PRODUCTS = [
    ("Amoxicillin 500mg", "Amoxicillin", "Antibiotics", "box", 20, True),
    ("Paracetamol 500mg", "Paracetamol", "Analgesics", "strip", 50, False),
    ("Metformin 850mg", "Metformin", "Antidiabetics", "box", 15, True),
]


class Command(BaseCommand):
    help = "Seed demo branches, staff, products and head office stock for local development."

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        branches = {}
        for code, name, location in DEMO_BRANCHES:
            branches[code], _ = Branch.objects.get_or_create(
                code=code,
                defaults={"name": name, "location": location, "is_active": True},
            )
        head_office = branches[settings.HEAD_OFFICE_BRANCH_CODE]

        staff = [
            ("admin", User.Role.SUPER_ADMIN, head_office, "admin1234"),
            ("manager", User.Role.BRANCH_MANAGER, branches["BR001"], "manager1234"),
            ("keeper", User.Role.STORE_KEEPER, branches["BR002"], "keeper1234"),
            ("controller", User.Role.INVENTORY_CONTROLLER, branches["BR002"], "controller1234"),
            ("cashier", User.Role.CASHIER, branches["BR002"], "cashier1234"),
        ]
        for username, role, branch, password in staff:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "branch": branch,
                    "is_staff": role == User.Role.SUPER_ADMIN,
                    "is_superuser": role == User.Role.SUPER_ADMIN,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])

        for name, generic_name, category, unit, min_stock_level, requires_prescription in DEMO_PRODUCTS:
            product, _ = Product.objects.get_or_create(
                name=name,
                defaults={
                    "generic_name": generic_name,
                    "category": category,
                    "unit": unit,
                    "min_stock_level": min_stock_level,
                    "requires_prescription": requires_prescription,
                },
            )
            for branch in (head_office, branches["BR001"]):
                if sellable_quantity(branch.id, product.id) == 0:
                    receive_stock(
                        branch.id,
                        product.id,
                        batch_number=f"SEED-{branch.code}-{product.id.hex[:6].upper()}",
                        expiry_date=date(date.today().year + 2, 12, 31),
                        quantity=200,
                        source_ref_type="seed",
                    )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(
            "Credentials: admin/admin1234, manager/manager1234, keeper/keeper1234, "
            "controller/controller1234, cashier/cashier1234"
        )
        self.stdout.write("Branches: " + ", ".join(branch.code for branch in branches.values()))
