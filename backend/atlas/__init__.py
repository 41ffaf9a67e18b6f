# Atlas deployment orchestrator
