# file: src/telegram_ingest/__init__.py
"""
Telegram ingest для аудитора каналов.

Модули:
- channel_links.py - достаёт короткое имя канала из t.me / telegram.me / telegram.org ссылки.
- rapidapi_client.py - клиент к Telegram data API (RapidAPI): кэш, spacing gate, 429-ретраи.
"""
