"""Built-in agent tree template and role routing tables."""

from typing import Dict, List, NamedTuple, Optional

from orchestry.core.states import AgentPermission

DEFAULT_PERMISSIONS = [
    AgentPermission.READ.value,
    AgentPermission.EXECUTE.value,
    AgentPermission.ESCALATE.value,
    AgentPermission.SPAWN.value,
]


class TemplateNode(NamedTuple):
    name: str
    agent_type: str
    level: int
    scope: str
    parent_name: Optional[str]
    max_fanout: int
    max_depth_below: int
    escalation_threshold: int
    permissions: List[str]


def _area(name: str, scope: str, parent: str, fanout: int) -> TemplateNode:
    return TemplateNode(name, "orchestrator", 3, scope, parent, fanout, 6, 3, DEFAULT_PERMISSIONS)


def _manager(name: str, scope: str, parent: str, fanout: int = 3, agent_type: str = "planning") -> TemplateNode:
    return TemplateNode(name, agent_type, 4, scope, parent, fanout, 5, 3, DEFAULT_PERMISSIONS)


# Ordered so that every parent precedes its children.
STANDARD_TEMPLATE: List[TemplateNode] = [
    # L0: Boss
    TemplateNode(
        "BossAgent", "boss", 0, "all", None, 1, 9, 5,
        DEFAULT_PERMISSIONS + [AgentPermission.CONFIGURE.value, AgentPermission.APPROVE.value, AgentPermission.DELETE.value],
    ),
    # L1: Global orchestrator
    TemplateNode(
        "GlobalOrchestrator", "orchestrator", 1, "all", "BossAgent", 4, 8, 5,
        DEFAULT_PERMISSIONS + [AgentPermission.CONFIGURE.value, AgentPermission.APPROVE.value],
    ),
    # L2: Domain orchestrators
    TemplateNode("CodeDomainOrchestrator", "orchestrator", 2, "code,programming,implementation,engineering",
                 "GlobalOrchestrator", 4, 7, 4, DEFAULT_PERMISSIONS + [AgentPermission.APPROVE.value]),
    TemplateNode("DesignDomainOrchestrator", "orchestrator", 2, "design,ui,ux,visual,layout,brand",
                 "GlobalOrchestrator", 3, 7, 4, DEFAULT_PERMISSIONS + [AgentPermission.APPROVE.value]),
    TemplateNode("DataDomainOrchestrator", "orchestrator", 2, "data,database,schema,migration,seed,query",
                 "GlobalOrchestrator", 4, 7, 4, DEFAULT_PERMISSIONS + [AgentPermission.APPROVE.value]),
    TemplateNode("DocsDomainOrchestrator", "orchestrator", 2, "docs,documentation,readme,api-docs,tutorial",
                 "GlobalOrchestrator", 3, 7, 4, DEFAULT_PERMISSIONS + [AgentPermission.APPROVE.value]),
    # L3: Areas
    _area("FrontendArea", "frontend,react,vue,angular,css,html,component,page,style", "CodeDomainOrchestrator", 5),
    _area("BackendArea", "backend,api,server,route,endpoint,middleware,auth,service", "CodeDomainOrchestrator", 5),
    _area("TestingArea", "testing,test,unit,integration,e2e,coverage,mock,fixture", "CodeDomainOrchestrator", 4),
    _area("InfraArea", "infra,infrastructure,deploy,ci,cd,docker,monitoring,pipeline", "CodeDomainOrchestrator", 4),
    _area("UIDesignArea", "ui,layout,grid,spacing,color,typography,component-design,theme", "DesignDomainOrchestrator", 4),
    _area("UXDesignArea", "ux,flow,journey,persona,usability,onboarding,navigation-flow,feedback", "DesignDomainOrchestrator", 4),
    _area("BrandArea", "brand,identity,logo,voice,guideline,style-guide", "DesignDomainOrchestrator", 3),
    _area("SchemaArea", "schema,table,column,index,constraint,relationship,normalization", "DataDomainOrchestrator", 3),
    _area("MigrationArea", "migration,rollback,data-transform,schema-diff,version", "DataDomainOrchestrator", 3),
    _area("SeedArea", "seed,fixture,sample-data,test-data,import", "DataDomainOrchestrator", 3),
    _area("QueryArea", "query,aggregation,report,optimization,performance", "DataDomainOrchestrator", 3),
    _area("APIDocsArea", "api-docs,openapi,swagger,endpoint-doc,schema-doc", "DocsDomainOrchestrator", 3),
    _area("UserDocsArea", "user-docs,tutorial,guide,readme,faq", "DocsDomainOrchestrator", 3),
    _area("InternalDocsArea", "internal-docs,architecture,changelog,decision-record,process-doc", "DocsDomainOrchestrator", 3),
    # L4: Managers
    _manager("ComponentManager", "component,button,form,input,modal,table,list,card,navigation", "FrontendArea", 5),
    _manager("PageManager", "page,route,layout,view,template,landing", "FrontendArea", 4),
    _manager("StyleManager", "style,css,theme,responsive,animation,transition,design-token", "FrontendArea", 4),
    _manager("APIManager", "api,rest,graphql,websocket,endpoint,route", "BackendArea", 5),
    _manager("DatabaseManager", "database,orm,query,model,repository", "BackendArea", 4),
    _manager("ServiceManager", "service,business-logic,workflow,process,handler", "BackendArea", 4),
    _manager("AuthManager", "auth,authentication,authorization,session,token,jwt,oauth,login", "BackendArea"),
    _manager("UnitTestManager", "unit-test,jest,pytest,assertion,mock", "TestingArea", agent_type="verification"),
    _manager("IntegrationTestManager", "integration-test,api-test,database-test,service-test", "TestingArea",
             agent_type="verification"),
    _manager("E2ETestManager", "e2e-test,playwright,cypress,selenium,browser-test", "TestingArea",
             agent_type="verification"),
    _manager("DeploymentManager", "deploy,release,staging,production,rollback", "InfraArea"),
    _manager("CIManager", "ci,cd,pipeline,github-actions,jenkins,build", "InfraArea"),
    _manager("MonitoringManager", "monitoring,logging,alerts,metrics,health-check,observability", "InfraArea"),
    _manager("LayoutDesignManager", "layout,grid,spacing,responsive,breakpoint", "UIDesignArea", 4),
    _manager("ComponentDesignManager", "component-design,button-design,form-design,card-design,icon", "UIDesignArea", 4),
    _manager("ThemeManager", "theme,color-palette,typography,design-token,dark-mode", "UIDesignArea"),
    _manager("FlowManager", "flow,user-journey,persona,usability,wireframe", "UXDesignArea", 4),
    _manager("ResearchManager", "ux-research,user-testing,heuristic,competitor-analysis", "UXDesignArea",
             agent_type="research"),
    _manager("IdentityManager", "identity,logo,brand-mark,visual-identity", "BrandArea"),
    _manager("GuidelineManager", "guideline,style-guide,brand-voice,brand-tone", "BrandArea"),
    _manager("SchemaDesignManager", "schema-design,table-design,erd,normalization", "SchemaArea"),
    _manager("RelationshipManager", "relationship,foreign-key,join,one-to-many,many-to-many", "SchemaArea"),
    _manager("MigrationScriptManager", "migration-script,up,down,rollback,alter-table", "MigrationArea"),
    _manager("SeedDataManager", "seed-data,fixture,sample,test-data,generator", "SeedArea"),
    _manager("QueryOptManager", "query-optimization,index-tuning,explain,performance", "QueryArea"),
    _manager("APIDocManager", "api-doc,openapi-spec,endpoint-doc,request-doc,response-doc", "APIDocsArea"),
    _manager("UserDocManager", "user-doc,tutorial,readme,getting-started,faq", "UserDocsArea"),
    _manager("InternalDocManager", "internal-doc,architecture-doc,changelog,decision-record,adr", "InternalDocsArea"),
]

# Singleton roles that always map to one named node.
DIRECT_MAP: Dict[str, str] = {
    "boss": "BossAgent",
    "orchestrator": "GlobalOrchestrator",
    "global_orchestrator": "GlobalOrchestrator",
}

# Preferred subtree nodes per role, most specific first.
BRANCH_HINTS: Dict[str, List[str]] = {
    "verification": ["UnitTestManager", "TestingArea", "CodeDomainOrchestrator"],
    "ui_testing": ["E2ETestManager", "TestingArea", "CodeDomainOrchestrator"],
    "design": ["UIDesignArea", "DesignDomainOrchestrator"],
    "ux": ["FlowManager", "UXDesignArea", "DesignDomainOrchestrator"],
    "database": ["SchemaDesignManager", "SchemaArea", "DataDomainOrchestrator"],
    "migration": ["MigrationScriptManager", "MigrationArea", "DataDomainOrchestrator"],
    "documentation": ["UserDocManager", "UserDocsArea", "DocsDomainOrchestrator"],
    "deployment": ["DeploymentManager", "InfraArea", "CodeDomainOrchestrator"],
    "security": ["AuthManager", "BackendArea", "CodeDomainOrchestrator"],
}

# Levels considered by context scoring.
SCORING_LEVELS = (2, 3, 4)


def parse_scope_keywords(scope: str) -> List[str]:
    """Split a comma-separated scope description into lower-case keywords."""
    if not scope or scope.strip().lower() == "all":
        return []
    return [kw.strip().lower() for kw in scope.split(",") if kw.strip()]
