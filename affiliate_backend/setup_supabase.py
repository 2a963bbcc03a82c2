"""
Script para criar as tabelas de conexão Evolution no Supabase
Execute com: python -m affiliate_backend.setup_supabase
"""

from .supabase_client import supabase
from .utils.db_helpers import db_call_with_retry

SCHEMA_SQL = """
-- Tenant profile rows (one per user); only the connection columns are managed here
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS "Nome da instancia da Evolution" TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS is_connected BOOLEAN DEFAULT false;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS connected_at TIMESTAMP WITH TIME ZONE;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS disconnected_at TIMESTAMP WITH TIME ZONE;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS remojid TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_profile_name TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_profile_picture_url TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_profile_status TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_instance_id TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_server_url TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_api_key TEXT;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_integration_data JSONB;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_raw_data JSONB;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_last_event JSONB;
ALTER TABLE kiwify ADD COLUMN IF NOT EXISTS evolution_last_sync TIMESTAMP WITH TIME ZONE;
CREATE INDEX IF NOT EXISTS idx_kiwify_evolution_instance ON kiwify("Nome da instancia da Evolution");

-- Instance history, one row per (user, instance)
CREATE TABLE IF NOT EXISTS evolution_instances (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id TEXT NOT NULL,
    instance_name TEXT NOT NULL,
    phone_number TEXT,
    is_connected BOOLEAN DEFAULT false,
    connected_at TIMESTAMP WITH TIME ZONE,
    disconnected_at TIMESTAMP WITH TIME ZONE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE (user_id, instance_name)
);

-- Webhook events that matched no tenant by instance name
CREATE TABLE IF NOT EXISTS evolution_connection_review (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_name TEXT NOT NULL,
    event JSONB NOT NULL,
    candidate_user_ids TEXT[] DEFAULT '{}',
    candidate_count INTEGER DEFAULT 0,
    single_candidate BOOLEAN DEFAULT false,
    status VARCHAR(50) DEFAULT 'pending' CHECK (status IN ('pending', 'resolved', 'dismissed')),
    resolved_user_id TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    resolved_at TIMESTAMP WITH TIME ZONE
);
CREATE INDEX IF NOT EXISTS idx_evolution_review_status ON evolution_connection_review(status, created_at DESC);

-- Key/value settings and job status
CREATE TABLE IF NOT EXISTS system_configurations (
    key TEXT PRIMARY KEY,
    value TEXT,
    description TEXT,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

ALTER TABLE evolution_instances ENABLE ROW LEVEL SECURITY;
ALTER TABLE evolution_connection_review ENABLE ROW LEVEL SECURITY;
ALTER TABLE system_configurations ENABLE ROW LEVEL SECURITY;

-- Sessions follow their own row over realtime
ALTER PUBLICATION supabase_realtime ADD TABLE kiwify;
"""

DEFAULT_CONFIGURATIONS = [
    {"key": "evolution_realtime_enabled", "value": "true", "description": "Atualizações em tempo real do status da conexão"},
    {"key": "auto_sync_enabled", "value": "true", "description": "Sincronização automática agendada"},
    {"key": "evolution_periodic_check_interval", "value": "30000", "description": "Intervalo da verificação periódica (ms)"},
    {"key": "evolution_visibility_check_enabled", "value": "true", "description": "Verificar status ao voltar para a aba"},
    {"key": "evolution_manual_disconnect_protection", "value": "true", "description": "Ignorar eventos logo após desconexão manual"},
    {"key": "evolution_auto_cleanup_on_disconnect", "value": "true", "description": "Limpar dados da instância ao desconectar"},
    {"key": "evolution_webhook_fallback_auto_bind", "value": "false", "description": "Vincular eventos sem correspondência ao único candidato"},
    {"key": "evolution_webhook_secret", "value": "", "description": "Segredo exigido nas chamadas do webhook (vazio desativa)"},
]


def setup_database():
    """Cria as colunas e tabelas necessárias no Supabase usando SQL"""
    try:
        supabase.rpc('exec_sql', {'sql': SCHEMA_SQL}).execute()
        print("Database setup completed!")
        return True
    except Exception as e:
        print(f"Note: Direct SQL execution might not be available. Error: {e}")
        print("Please run the SQL commands manually in the Supabase SQL Editor.")
        return False


def seed_configurations():
    """Insere as configurações padrão que ainda não existem"""
    keys = [row["key"] for row in DEFAULT_CONFIGURATIONS]
    existing = db_call_with_retry(
        "setup.load_configurations",
        lambda: supabase.table('system_configurations').select('key').in_('key', keys).execute(),
    )
    present = {row.get("key") for row in (existing.data or [])}
    missing = [row for row in DEFAULT_CONFIGURATIONS if row["key"] not in present]
    if not missing:
        print("Configurations already present, skipping seed...")
        return
    supabase.table('system_configurations').insert(missing).execute()
    print(f"Created {len(missing)} configuration entries")


if __name__ == '__main__':
    if setup_database():
        seed_configurations()
