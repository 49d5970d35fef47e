from tortoise import fields, models


class Ranking(models.Model):
    """
    One artwork's position on a daily/weekly/monthly ranking list.
    """
    id = fields.IntField(pk=True)

    pid = fields.CharField(max_length=32, index=True)
    rank = fields.IntField()
    rank_type = fields.CharField(max_length=16)
    rank_date = fields.DateField()
    captured_at = fields.DatetimeField()

    class Meta:
        table = "ranking"
        unique_together = (("rank_type", "rank_date", "pid"),)
