"""Agent tree manager.

Maintains the permissioned hierarchy of agent nodes (levels 0..9), routes a
logical agent role to the best node in the tree, and carries questions up the
hierarchy through escalation chains.
"""

import uuid
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from orchestry.agents.models import ChainRecord, NodeRecord, NodeSpec
from orchestry.agents.templates import (
    BRANCH_HINTS,
    DIRECT_MAP,
    SCORING_LEVELS,
    STANDARD_TEMPLATE,
    parse_scope_keywords,
)
from orchestry.core.database import AgentTreeNode, DatabaseManager, EscalationChain
from orchestry.core.exceptions import (
    ChainNotFoundError,
    InvalidTransitionError,
    NodeNotFoundError,
    TreeValidationError,
)
from orchestry.core.simple_config import SimpleConfig, get_config
from orchestry.core.states import (
    CHAIN_TRANSITIONS,
    EscalationChainStatus,
    TreeNodeStatus,
    ensure_transition,
)

logger = logging.getLogger(__name__)

MAX_LEVEL = 9
CONTEXT_KEYS = ("title", "operation_type", "body")


class AgentTreeManager:
    """Builds, routes through and escalates within agent trees."""

    def __init__(self, db_manager: DatabaseManager, config: Optional[SimpleConfig] = None):
        """Initialize agent tree manager.

        Args:
            db_manager: Database manager instance
            config: Settings (default tree instance); defaults to the process config
        """
        self.db_manager = db_manager
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_node(session: Session, node_id: str) -> AgentTreeNode:
        node = session.get(AgentTreeNode, node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    @staticmethod
    def _load_chain(session: Session, chain_id: str) -> EscalationChain:
        chain = session.get(EscalationChain, chain_id)
        if chain is None:
            raise ChainNotFoundError(chain_id)
        return chain

    @staticmethod
    def _require_escalating(chain: EscalationChain, target: str) -> None:
        """Terminal chains reject every further change, including no-op ones."""
        if chain.status != EscalationChainStatus.ESCALATING.value:
            raise InvalidTransitionError("escalation chain", chain.status, target)
        ensure_transition("escalation chain", CHAIN_TRANSITIONS, EscalationChainStatus, chain.status, target)

    @staticmethod
    def _ancestors(session: Session, node: AgentTreeNode) -> List[AgentTreeNode]:
        ancestors = []
        seen = {node.id}
        parent_id = node.parent_id
        while parent_id and parent_id not in seen:
            parent = session.get(AgentTreeNode, parent_id)
            if parent is None:
                break
            ancestors.append(parent)
            seen.add(parent.id)
            parent_id = parent.parent_id
        return ancestors

    @staticmethod
    def _root(session: Session, instance_id: str) -> Optional[AgentTreeNode]:
        return (
            session.query(AgentTreeNode)
            .filter(AgentTreeNode.instance_id == instance_id, AgentTreeNode.parent_id.is_(None))
            .order_by(AgentTreeNode.level, AgentTreeNode.created_at)
            .first()
        )

    def _insert_node(self, session: Session, spec: NodeSpec) -> AgentTreeNode:
        """Validate a node against the tree's structural limits and add it.

        Every check runs before the node is added, so a rejected node leaves
        the tree untouched.
        """
        parent = None
        if spec.parent_id:
            parent = self._load_node(session, spec.parent_id)
            instance_id = spec.instance_id or parent.instance_id
            if instance_id != parent.instance_id:
                raise TreeValidationError(
                    f"Parent {parent.id} belongs to tree '{parent.instance_id}', not '{instance_id}'"
                )
            level = spec.level if spec.level is not None else parent.level + 1
            if level != parent.level + 1:
                raise TreeValidationError(
                    f"Node '{spec.name}' at level {level} cannot be a child of level {parent.level}"
                )
        else:
            instance_id = spec.instance_id or self.config.default_tree_instance
            level = spec.level if spec.level is not None else 0
            if self._root(session, instance_id) is not None:
                raise TreeValidationError(f"Tree '{instance_id}' already has a root node")

        if not 0 <= level <= MAX_LEVEL:
            raise TreeValidationError(f"Level {level} outside 0..{MAX_LEVEL}")
        if level + spec.max_depth_below > MAX_LEVEL:
            raise TreeValidationError(
                f"Node '{spec.name}' at level {level} cannot allow {spec.max_depth_below} levels below it"
            )

        if parent is not None:
            child_count = session.query(AgentTreeNode).filter(AgentTreeNode.parent_id == parent.id).count()
            if child_count >= parent.max_fanout:
                raise TreeValidationError(
                    f"Parent '{parent.name}' already has {child_count} children (max_fanout={parent.max_fanout})"
                )
            for ancestor in [parent] + self._ancestors(session, parent):
                if level - ancestor.level > ancestor.max_depth_below:
                    raise TreeValidationError(
                        f"Node '{spec.name}' would sit {level - ancestor.level} levels below "
                        f"'{ancestor.name}' (max_depth_below={ancestor.max_depth_below})"
                    )

        duplicate = (
            session.query(AgentTreeNode)
            .filter(AgentTreeNode.instance_id == instance_id, AgentTreeNode.name == spec.name)
            .first()
        )
        if duplicate is not None:
            raise TreeValidationError(f"Tree '{instance_id}' already has a node named '{spec.name}'")

        if spec.escalation_target_id:
            target = self._load_node(session, spec.escalation_target_id)
            if target.instance_id != instance_id:
                raise TreeValidationError(f"Escalation target {target.id} is in another tree")

        keywords = spec.scope_keywords
        if keywords is None:
            keywords = parse_scope_keywords(spec.scope)

        node = AgentTreeNode(
            id=str(uuid.uuid4()),
            instance_id=instance_id,
            agent_type=spec.agent_type,
            name=spec.name,
            level=level,
            parent_id=parent.id if parent else None,
            scope=spec.scope,
            scope_keywords=[kw.lower() for kw in keywords],
            permissions=[p.value for p in spec.permissions],
            max_fanout=spec.max_fanout,
            max_depth_below=spec.max_depth_below,
            escalation_threshold=spec.escalation_threshold,
            escalation_target_id=spec.escalation_target_id,
            status=TreeNodeStatus.IDLE.value,
            created_at=datetime.utcnow(),
        )
        session.add(node)
        session.flush()
        return node

    def _escalate(self, session: Session, chain: EscalationChain) -> bool:
        """Move a chain one step up. Returns False when it is already at the top."""
        current = self._load_node(session, chain.current_node_id)
        next_id = current.escalation_target_id or current.parent_id
        if not next_id:
            logger.warning(
                f"[AGENT_TREE] Chain {chain.id} reached the top at '{current.name}'; awaiting user answer"
            )
            return False

        current.escalations += 1
        chain.current_node_id = next_id
        chain.levels_traversed = list(chain.levels_traversed or []) + [next_id]
        logger.warning(f"[AGENT_TREE] Chain {chain.id} escalated from '{current.name}' to {next_id}")
        return True

    # ------------------------------------------------------------------
    # Tree construction
    # ------------------------------------------------------------------

    def ensure_default_tree(self, instance_id: Optional[str] = None) -> bool:
        """Build the standard template for an instance that has no nodes yet.

        Returns:
            True if the tree was built, False if the instance already had nodes
        """
        instance_id = instance_id or self.config.default_tree_instance
        with self.db_manager.exclusive_session() as session:
            existing = session.query(AgentTreeNode).filter(AgentTreeNode.instance_id == instance_id).count()
            if existing:
                return False

            ids_by_name: Dict[str, str] = {}
            for template in STANDARD_TEMPLATE:
                node = self._insert_node(session, NodeSpec(
                    agent_type=template.agent_type,
                    name=template.name,
                    parent_id=ids_by_name.get(template.parent_name) if template.parent_name else None,
                    level=template.level,
                    instance_id=instance_id,
                    scope=template.scope,
                    permissions=template.permissions,
                    max_fanout=template.max_fanout,
                    max_depth_below=template.max_depth_below,
                    escalation_threshold=template.escalation_threshold,
                ))
                ids_by_name[template.name] = node.id

        logger.info(f"[AGENT_TREE] Built standard tree '{instance_id}' with {len(STANDARD_TEMPLATE)} nodes")
        return True

    def add_node(self, spec: NodeSpec) -> NodeRecord:
        with self.db_manager.exclusive_session() as session:
            node = self._insert_node(session, spec)
            record = NodeRecord.model_validate(node)

        logger.info(f"[AGENT_TREE] Added node '{record.name}' at level {record.level} in '{record.instance_id}'")
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[NodeRecord]:
        with self.db_manager.session_scope() as session:
            node = session.get(AgentTreeNode, node_id)
            return NodeRecord.model_validate(node) if node else None

    def get_node_by_name(self, name: str, instance_id: Optional[str] = None) -> Optional[NodeRecord]:
        instance_id = instance_id or self.config.default_tree_instance
        with self.db_manager.session_scope() as session:
            node = (
                session.query(AgentTreeNode)
                .filter(AgentTreeNode.instance_id == instance_id, AgentTreeNode.name == name)
                .first()
            )
            return NodeRecord.model_validate(node) if node else None

    def get_children(self, node_id: str) -> List[NodeRecord]:
        with self.db_manager.session_scope() as session:
            children = (
                session.query(AgentTreeNode)
                .filter(AgentTreeNode.parent_id == node_id)
                .order_by(AgentTreeNode.name)
                .all()
            )
            return [NodeRecord.model_validate(c) for c in children]

    def get_ancestors(self, node_id: str) -> List[NodeRecord]:
        """Ancestors of a node, nearest first."""
        with self.db_manager.session_scope() as session:
            node = self._load_node(session, node_id)
            return [NodeRecord.model_validate(a) for a in self._ancestors(session, node)]

    def get_root(self, instance_id: Optional[str] = None) -> Optional[NodeRecord]:
        instance_id = instance_id or self.config.default_tree_instance
        with self.db_manager.session_scope() as session:
            root = self._root(session, instance_id)
            return NodeRecord.model_validate(root) if root else None

    def list_nodes(self, instance_id: Optional[str] = None) -> List[NodeRecord]:
        instance_id = instance_id or self.config.default_tree_instance
        with self.db_manager.session_scope() as session:
            nodes = (
                session.query(AgentTreeNode)
                .filter(AgentTreeNode.instance_id == instance_id)
                .order_by(AgentTreeNode.level, AgentTreeNode.name)
                .all()
            )
            return [NodeRecord.model_validate(n) for n in nodes]

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @staticmethod
    def _context_text(context: Union[str, Dict[str, Any], None]) -> str:
        if not context:
            return ""
        if isinstance(context, dict):
            keys = [k for k in CONTEXT_KEYS if context.get(k)]
            values = [context[k] for k in keys] if keys else [v for v in context.values() if isinstance(v, str)]
            return " ".join(str(v) for v in values).lower()
        return str(context).lower()

    def resolve_node(
        self,
        agent_role: str,
        context: Union[str, Dict[str, Any], None] = None,
        instance_id: Optional[str] = None,
    ) -> Optional[NodeRecord]:
        """Find the tree node best suited to handle work for an agent role.

        Tiers are tried most specific first: the direct map for singleton
        roles, the role's branch hints, keyword scoring of mid-tree node scopes
        against the context text (roles without static hints only), an exact
        agent_type match, and finally the root. A routing miss never raises.

        Args:
            agent_role: Logical role (e.g. "verification", "coding")
            context: Free text, or a dict with title/operation_type/body
            instance_id: Tree instance; defaults to the configured one

        Returns:
            The chosen node, or None only when the tree has no nodes
        """
        nodes = self.list_nodes(instance_id)
        if not nodes:
            return None

        role = (agent_role or "").strip().lower()
        by_name = {n.name: n for n in nodes}

        direct = DIRECT_MAP.get(role)
        if direct and direct in by_name:
            return by_name[direct]

        hints = BRANCH_HINTS.get(role)
        if hints:
            for name in hints:
                if name in by_name:
                    return by_name[name]

        text = self._context_text(context)
        if text and role not in BRANCH_HINTS and role not in DIRECT_MAP:
            scored = []
            for node in nodes:
                if node.level not in SCORING_LEVELS:
                    continue
                score = sum(1 for kw in node.scope_keywords if kw and kw in text)
                if score > 0:
                    scored.append((-score, -node.level, node.name, node.id, node))
            if scored:
                best = min(scored, key=lambda entry: entry[:4])[4]
                logger.debug(f"[AGENT_TREE] Role '{role}' routed by context to '{best.name}'")
                return best

        typed = [n for n in nodes if n.agent_type == role]
        if typed:
            return min(typed, key=lambda n: (n.level, n.name))

        root = min(nodes, key=lambda n: (n.level, n.name))
        logger.info(f"[AGENT_TREE] No match for role '{role}', falling back to root '{root.name}'")
        return root

    # ------------------------------------------------------------------
    # Escalation chains
    # ------------------------------------------------------------------

    def create_escalation_chain(
        self,
        root_id: str,
        origin_id: str,
        current_id: str,
        question: str,
        context: Optional[str] = None,
        ticket_id: Optional[str] = None,
    ) -> ChainRecord:
        with self.db_manager.session_scope() as session:
            for node_id in (root_id, origin_id, current_id):
                self._load_node(session, node_id)
            chain = EscalationChain(
                id=str(uuid.uuid4()),
                tree_root_id=root_id,
                originating_node_id=origin_id,
                current_node_id=current_id,
                ticket_id=ticket_id,
                question=question,
                context=context,
                status=EscalationChainStatus.ESCALATING.value,
                levels_traversed=[current_id],
                created_at=datetime.utcnow(),
            )
            session.add(chain)
            session.flush()
            record = ChainRecord.model_validate(chain)

        logger.info(f"[AGENT_TREE] Opened escalation chain {record.id} at node {current_id}")
        return record

    def advance(self, chain_id: str, next_node_id: str) -> ChainRecord:
        """Move a chain to an explicitly chosen node."""
        with self.db_manager.session_scope() as session:
            chain = self._load_chain(session, chain_id)
            self._require_escalating(chain, EscalationChainStatus.ESCALATING.value)
            self._load_node(session, next_node_id)
            chain.current_node_id = next_node_id
            chain.levels_traversed = list(chain.levels_traversed or []) + [next_node_id]
            return ChainRecord.model_validate(chain)

    def escalate_question(self, chain_id: str) -> ChainRecord:
        """Move a chain to the current node's escalation target or parent.

        At the top of the tree the chain is left escalating, waiting for the user.
        """
        with self.db_manager.session_scope() as session:
            chain = self._load_chain(session, chain_id)
            self._require_escalating(chain, EscalationChainStatus.ESCALATING.value)
            self._escalate(session, chain)
            return ChainRecord.model_validate(chain)

    def resolve(self, chain_id: str, answer: str, at_level: int) -> ChainRecord:
        """Record the answer that closes a chain and unblock the node that asked."""
        with self.db_manager.session_scope() as session:
            chain = self._load_chain(session, chain_id)
            self._require_escalating(chain, EscalationChainStatus.RESOLVED.value)
            chain.status = EscalationChainStatus.RESOLVED.value
            chain.answer = answer
            chain.resolved_at_level = at_level
            chain.resolved_at = datetime.utcnow()

            origin = session.get(AgentTreeNode, chain.originating_node_id)
            if origin is not None and origin.status == TreeNodeStatus.BLOCKED.value:
                origin.status = TreeNodeStatus.IDLE.value
                origin.retries = 0

            record = ChainRecord.model_validate(chain)

        logger.info(f"[AGENT_TREE] Chain {chain_id} resolved at level {at_level}")
        return record

    def abandon(self, chain_id: str, reason: str) -> ChainRecord:
        with self.db_manager.session_scope() as session:
            chain = self._load_chain(session, chain_id)
            self._require_escalating(chain, EscalationChainStatus.ABANDONED.value)
            chain.status = EscalationChainStatus.ABANDONED.value
            chain.abandon_reason = reason
            chain.resolved_at = datetime.utcnow()
            record = ChainRecord.model_validate(chain)

        logger.warning(f"[AGENT_TREE] Chain {chain_id} abandoned: {reason}")
        return record

    def get_escalation_chain(self, chain_id: str) -> Optional[ChainRecord]:
        with self.db_manager.session_scope() as session:
            chain = session.get(EscalationChain, chain_id)
            return ChainRecord.model_validate(chain) if chain else None

    def get_active_escalation_chains(self, root_id: Optional[str] = None) -> List[ChainRecord]:
        with self.db_manager.session_scope() as session:
            query = session.query(EscalationChain).filter(
                EscalationChain.status == EscalationChainStatus.ESCALATING.value
            )
            if root_id:
                query = query.filter(EscalationChain.tree_root_id == root_id)
            chains = query.order_by(EscalationChain.created_at).all()
            return [ChainRecord.model_validate(c) for c in chains]

    # ------------------------------------------------------------------
    # Node state and telemetry
    # ------------------------------------------------------------------

    def record_node_failure(self, node_id: str, question: Optional[str] = None) -> Optional[ChainRecord]:
        """Count a failed attempt on a node, escalating once it exceeds its threshold.

        Returns:
            The escalation chain opened for the node (or the one already open),
            or None while the node is still within its threshold
        """
        with self.db_manager.session_scope() as session:
            node = self._load_node(session, node_id)
            node.retries += 1
            if node.retries <= node.escalation_threshold:
                logger.info(
                    f"[AGENT_TREE] Node '{node.name}' failure {node.retries}/{node.escalation_threshold}"
                )
                return None

            existing = (
                session.query(EscalationChain)
                .filter(
                    EscalationChain.originating_node_id == node.id,
                    EscalationChain.status == EscalationChainStatus.ESCALATING.value,
                )
                .first()
            )
            if existing is not None:
                return ChainRecord.model_validate(existing)

            node.status = TreeNodeStatus.BLOCKED.value
            root = self._root(session, node.instance_id)
            chain = EscalationChain(
                id=str(uuid.uuid4()),
                tree_root_id=root.id if root else node.id,
                originating_node_id=node.id,
                current_node_id=node.id,
                question=question or f"Node '{node.name}' failed {node.retries} times",
                status=EscalationChainStatus.ESCALATING.value,
                levels_traversed=[node.id],
                created_at=datetime.utcnow(),
            )
            session.add(chain)
            self._escalate(session, chain)
            if node.escalation_target_id is None and node.parent_id is None:
                # Root nodes have nowhere to go but still count the escalation
                node.escalations += 1
            session.flush()
            record = ChainRecord.model_validate(chain)

        logger.warning(
            f"[AGENT_TREE] Node {node_id} exceeded its escalation threshold; blocked and escalated via chain {record.id}"
        )
        return record

    def record_telemetry(self, node_id: str, tokens: int = 0, retries: int = 0, escalations: int = 0) -> NodeRecord:
        with self.db_manager.session_scope() as session:
            node = self._load_node(session, node_id)
            node.tokens_consumed += tokens
            node.retries += retries
            node.escalations += escalations
            return NodeRecord.model_validate(node)

    def activate_node(self, node_id: str) -> NodeRecord:
        with self.db_manager.session_scope() as session:
            node = self._load_node(session, node_id)
            if node.status == TreeNodeStatus.BLOCKED.value:
                raise InvalidTransitionError("tree node", node.status, TreeNodeStatus.ACTIVE.value)
            node.status = TreeNodeStatus.ACTIVE.value
            return NodeRecord.model_validate(node)

    def complete_node(self, node_id: str) -> NodeRecord:
        """Return a node to idle after finished work, clearing its failure count."""
        with self.db_manager.session_scope() as session:
            node = self._load_node(session, node_id)
            node.status = TreeNodeStatus.IDLE.value
            node.retries = 0
            return NodeRecord.model_validate(node)
