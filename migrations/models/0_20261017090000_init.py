from tortoise import BaseDBAsyncClient


async def upgrade(db: BaseDBAsyncClient) -> str:
    return """
        CREATE TABLE IF NOT EXISTS "appointments" (
    "id" UUID NOT NULL PRIMARY KEY,
    "external_id" VARCHAR(191),
    "calendar_id" VARCHAR(191),
    "customer_name" VARCHAR(200) NOT NULL,
    "service" VARCHAR(200) NOT NULL,
    "phone" VARCHAR(32) NOT NULL,
    "timezone" VARCHAR(64) NOT NULL,
    "start_at" TIMESTAMPTZ NOT NULL,
    "end_at" TIMESTAMPTZ,
    "confirmation_status" VARCHAR(20) NOT NULL  DEFAULT 'pending',
    "call_attempts" INT NOT NULL  DEFAULT 0,
    "last_call_id" VARCHAR(191),
    "last_outcome" VARCHAR(64),
    "outcome_call_id" VARCHAR(191),
    "next_retry_at" TIMESTAMPTZ,
    "created_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS "idx_appointment_externa_6d2a41" ON "appointments" ("external_id");
CREATE INDEX IF NOT EXISTS "idx_appointment_phone_4f0c1e" ON "appointments" ("phone", "start_at");
CREATE INDEX IF NOT EXISTS "idx_appointment_confirm_b83d27" ON "appointments" ("confirmation_status", "start_at");
COMMENT ON COLUMN "appointments"."confirmation_status" IS 'PENDING: pending\nCONFIRMED: confirmed\nCANCELLED: cancelled\nRESCHEDULE_REQUESTED: reschedule_requested\nSMS_FALLBACK_SENT: sms_fallback_sent';
CREATE TABLE IF NOT EXISTS "call_logs" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "ts" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "event" VARCHAR(32) NOT NULL,
    "phone" VARCHAR(32),
    "attempt" INT NOT NULL  DEFAULT 0,
    "call_id" VARCHAR(191),
    "detail" TEXT,
    "appointment_id" UUID REFERENCES "appointments" ("id") ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS "idx_call_logs_event_0e5b9c" ON "call_logs" ("event");
COMMENT ON TABLE "call_logs" IS 'Append-only audit trail of everything the reminder flow did for an appointment.';
CREATE TABLE IF NOT EXISTS "message_records" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "direction" VARCHAR(8) NOT NULL  DEFAULT 'outbound',
    "to_number" VARCHAR(32) NOT NULL,
    "from_number" VARCHAR(32),
    "body" TEXT NOT NULL,
    "sid" VARCHAR(255),
    "success" BOOL NOT NULL  DEFAULT False,
    "error" TEXT,
    "created_at" TIMESTAMPTZ NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "appointment_id" UUID REFERENCES "appointments" ("id") ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS "idx_message_rec_to_numb_7a91d0" ON "message_records" ("to_number", "created_at");
CREATE TABLE IF NOT EXISTS "aerich" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "version" VARCHAR(255) NOT NULL,
    "app" VARCHAR(100) NOT NULL,
    "content" JSONB NOT NULL
);"""


async def downgrade(db: BaseDBAsyncClient) -> str:
    return """
        """
