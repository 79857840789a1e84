import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='ApiKey',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('service_name', models.CharField(max_length=100, unique=True)),
                ('encrypted_key', models.TextField()),
            ],
            options={
                'db_table': 'chats_apikey',
            },
        ),
        migrations.CreateModel(
            name='ChatThread',
            fields=[
                ('id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('title', models.TextField(default='New Chat')),
                ('model_id', models.TextField()),
                ('model_display_name', models.TextField()),
                ('model_provider', models.TextField()),
                ('is_active', models.BooleanField(default=False)),
                ('created_at', models.BigIntegerField()),
                ('updated_at', models.BigIntegerField(db_index=True)),
            ],
            options={
                'db_table': 'chats_chatthread',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='Settings',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('custom_prompt', models.TextField(blank=True, null=True)),
                ('serialized_models', models.TextField(blank=True, null=True)),
            ],
            options={
                'db_table': 'chats_settings',
            },
        ),
        migrations.CreateModel(
            name='Message',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('is_user', models.BooleanField()),
                ('text', models.TextField()),
                ('timestamp', models.BigIntegerField(db_index=True)),
                ('thread', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='messages', to='chats.chatthread')),
            ],
            options={
                'db_table': 'chats_message',
                'ordering': ['id'],
            },
        ),
    ]
