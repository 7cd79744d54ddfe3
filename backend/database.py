from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Default WhatsApp templates. Content uses {variable} placeholders.
DEFAULT_TEMPLATES = [
    {
        "slug": "invoice_generated",
        "name": "Fatura gerada",
        "content": (
            "🏢 *NotificaCondo*\n\n"
            "Olá, *{nome}*!\n\n"
            "A fatura do condomínio *{condominio}* referente ao período {periodo} foi gerada.\n\n"
            "💰 Valor: *R$ {valor}*\n"
            "📅 Vencimento: *{vencimento}*\n\n"
            "Acesse seu painel para realizar o pagamento:\n"
            "👉 {link}\n\n"
            "Atenciosamente,\nEquipe NotificaCondo"
        ),
        "variables": ["nome", "condominio", "periodo", "valor", "vencimento", "link"],
    },
    {
        "slug": "trial_ended_free",
        "name": "Fim do período de teste (plano gratuito)",
        "content": (
            "🏢 *NotificaCondo*\n\n"
            "Olá, *{nome}*!\n\n"
            "O período de teste do condomínio *{condominio}* terminou e sua conta segue ativa no plano *{plano}*.\n\n"
            "Para liberar mais recursos, conheça nossos planos:\n"
            "👉 {link}\n\n"
            "Atenciosamente,\nEquipe NotificaCondo"
        ),
        "variables": ["nome", "condominio", "plano", "link"],
    },
    {
        "slug": "trial_ending",
        "name": "Período de teste terminando",
        "content": (
            "🏢 *NotificaCondo*\n\n"
            "Olá, *{nome}*!\n\n"
            "⏰ Seu período de teste gratuito para o condomínio *{condominio}* termina em *{dias} dias* ({data_fim}).\n\n"
            "Para continuar usando todos os recursos da plataforma sem interrupção, acesse seu painel e escolha o plano ideal:\n\n"
            "👉 {link}\n\n"
            "Atenciosamente,\nEquipe NotificaCondo"
        ),
        "variables": ["nome", "condominio", "dias", "data_fim", "link"],
    },
]


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for billing, dispatch and job logs."""
        # Invoice idempotency key. Concurrent billing runs rely on this index:
        # a failure here is logged loudly instead of being swallowed.
        try:
            await self.db.invoices.create_index(
                [("subscription_id", 1), ("period_start", 1)],
                unique=True,
                name="uniq_subscription_period_start",
            )
        except Exception as e:
            logger.error(f"Failed to create unique invoice index (subscription_id, period_start): {e}")

        try:
            await self.db.subscriptions.create_index("id", unique=True)
            await self.db.subscriptions.create_index([("active", 1), ("is_trial", 1), ("trial_ends_at", 1)])
            await self.db.subscriptions.create_index([("active", 1), ("current_period_end", 1)])
            await self.db.invoices.create_index("id", unique=True)
            await self.db.invoices.create_index([("condominium_id", 1), ("due_date", -1)])

            # Dispatch records - webhook lookups by provider id, monitor by sent_at
            await self.db.notifications_sent.create_index("id", unique=True)
            await self.db.notifications_sent.create_index("provider_message_id", sparse=True)
            await self.db.notifications_sent.create_index([("sent_at", -1)])
            await self.db.notifications_sent.create_index([("provider_status", 1), ("sent_at", -1)])

            await self.db.whatsapp_templates.create_index("slug", unique=True)
            await self.db.whatsapp_config.create_index([("is_active", 1), ("created_at", -1)])

            # Execution log + pause controls
            await self.db.edge_function_logs.create_index("id", unique=True)
            await self.db.edge_function_logs.create_index([("function_name", 1), ("started_at", -1)])
            await self.db.cron_job_controls.create_index("function_name", unique=True)

            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("condominium_id", 1), ("timestamp", -1)])

            await self._seed_notification_templates()
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

    async def _seed_notification_templates(self):
        """Seed default WhatsApp templates (idempotent, never overwrites edited content)."""
        from datetime import datetime, timezone
        now = datetime.now(timezone.utc)
        for t in DEFAULT_TEMPLATES:
            await self.db.whatsapp_templates.update_one(
                {"slug": t["slug"]},
                {"$setOnInsert": {**t, "is_active": True, "created_at": now}},
                upsert=True,
            )
        logger.info("Notification templates seeded")

# Global database instance
database = Database()
