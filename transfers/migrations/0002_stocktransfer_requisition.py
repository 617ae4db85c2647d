import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("requisitions", "0001_initial"),
        ("transfers", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="stocktransfer",
            name="requisition",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="transfers",
                to="requisitions.stockrequisition",
            ),
        ),
    ]
