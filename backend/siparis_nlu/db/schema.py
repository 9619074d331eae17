from databases import Database
import logging

# Bu dosya intent tablolarını güvenli şekilde oluşturur (IF NOT EXISTS).
# DDL hem PostgreSQL hem de testlerde kullanılan SQLite ile uyumlu tutulur.

logger = logging.getLogger(__name__)

CREATE_ORDER_INTENTS = """
CREATE TABLE IF NOT EXISTS order_intents (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    last_user_message_id TEXT NOT NULL,
    extracted_json TEXT NOT NULL,
    confidence REAL NOT NULL,
    needs_clarification BOOLEAN NOT NULL,
    clarification_question TEXT,
    agent_feedback TEXT CHECK (agent_feedback IN ('correct', 'incorrect')),
    audit_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL
);
"""

CREATE_ORDER_INTENTS_CONVERSATION_INDEX = """
CREATE INDEX IF NOT EXISTS idx_order_intents_conversation
    ON order_intents (tenant_id, conversation_id, created_at);
"""

# Geri bildirim istatistikleri için
CREATE_ORDER_INTENTS_FEEDBACK_INDEX = """
CREATE INDEX IF NOT EXISTS idx_order_intents_feedback
    ON order_intents (tenant_id, agent_feedback);
"""

ALL_STATEMENTS = (
    CREATE_ORDER_INTENTS,
    CREATE_ORDER_INTENTS_CONVERSATION_INDEX,
    CREATE_ORDER_INTENTS_FEEDBACK_INDEX,
)


async def create_tables(db: Database):
    for statement in ALL_STATEMENTS:
        await db.execute(statement)
    logger.info("[DB] order_intents schema ready")
