from django.db import models

from chats.dataset import DEFAULT_TITLE


class ChatThread(models.Model):
    # Metadata only; thread rows are stored unencrypted.
    id = models.CharField(primary_key=True, max_length=64)
    title = models.TextField(default=DEFAULT_TITLE)
    model_id = models.TextField()
    model_display_name = models.TextField()
    model_provider = models.TextField()
    is_active = models.BooleanField(default=False)

    # Epoch milliseconds
    created_at = models.BigIntegerField()
    updated_at = models.BigIntegerField(db_index=True)

    class Meta:
        ordering = ['created_at', 'id']
        db_table = 'chats_chatthread'

    def __str__(self):
        return f"ChatThread {self.id} ({self.title})"


class Message(models.Model):
    thread = models.ForeignKey(ChatThread, on_delete=models.CASCADE, related_name='messages')
    is_user = models.BooleanField()
    text = models.TextField()  # salt::tag::payload field blob
    timestamp = models.BigIntegerField(db_index=True)

    class Meta:
        # Insertion order is chronological order
        ordering = ['id']
        db_table = 'chats_message'

    def __str__(self):
        return f"Message {self.pk} in thread {self.thread_id}"


class ApiKey(models.Model):
    service_name = models.CharField(max_length=100, unique=True)
    encrypted_key = models.TextField()

    class Meta:
        db_table = 'chats_apikey'

    def __str__(self):
        return f"ApiKey for {self.service_name}"


class Settings(models.Model):
    """Singleton row holding the custom prompt and user-added model ids."""

    custom_prompt = models.TextField(null=True, blank=True)
    serialized_models = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'chats_settings'

    @classmethod
    def load(cls):
        settings_row, _ = cls.objects.get_or_create(pk=1)
        return settings_row

    def __str__(self):
        return "Chat settings"
