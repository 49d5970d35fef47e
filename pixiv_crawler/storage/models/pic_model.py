from tortoise import fields, models


class Pic(models.Model):
    """
    Artwork that met a popularity threshold, keyed by pid.
    """
    pid = fields.CharField(max_length=32, pk=True)

    captured_at = fields.DatetimeField(null=True)
    tags = fields.TextField(default="")

    like_count = fields.IntField(default=0)
    bookmark_count = fields.IntField(default=0)
    view_count = fields.IntField(default=0)
    popularity = fields.FloatField(default=0.0, index=True)

    # Filled later by the image downloader.
    image_path = fields.CharField(max_length=1024, default="")
    image_url = fields.CharField(max_length=2048, default="")
    file_size = fields.BigIntField(null=True)

    class Meta:
        table = "pic"

    def __str__(self):
        return f"{self.pid} [{self.popularity}]"
