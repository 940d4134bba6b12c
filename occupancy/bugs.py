"""Declarative model text in the BUGS language.

A model is a list of statements inside a ``model { ... }`` block. There are
three kinds of statement: stochastic (``z[i] ~ dbern(psi)``), deterministic
(``p.eff[i] <- z[i] * p``, optionally with a link on the left hand side, as in
``logit(psi[i]) <- alpha.occ + beta.occ * veg[i]``) and bounded ``for`` loops.
Comments start with ``#``. The writer puts one statement on each line and
the parser expects the same.

Typical usage example:

  spec = MeanOccupancy().bugs_model()
  write_model(spec, 'results/mean/model.txt')
  spec == read_model('results/mean/model.txt')   # True
"""

from dataclasses import dataclass, field
from typing import Tuple, Union

import logging
import re

import pymc as pm

# BUGS distribution name -> name of the matching PyMC random variable op
PYMC_FAMILIES = {
    'dbern': 'bernoulli',
    'dbin': 'binomial',
    'dunif': 'uniform',
    'dnorm': 'normal',
    'dpois': 'poisson',
    'dbeta': 'beta',
}

LINK_FUNCTIONS = ('logit', 'log', 'probit', 'cloglog')

INDENT = '   '

FOR_RE = re.compile(r'^for\s*\(\s*(\w+)\s+in\s+([^:()]+):([^()]+)\)\s*\{$')
STOCHASTIC_RE = re.compile(r'^(.+?)\s*~\s*(\w+)\s*\((.*)\)$')
DETERMINISTIC_RE = re.compile(r'^(.+?)\s*<-\s*(.+)$')
LINK_RE = re.compile(r'^(\w+)\s*\((.+)\)$')
NAME_RE = re.compile(r'\b[A-Za-z][\w.]*(?![\w.]*\s*\()')
MODEL_RE = re.compile(r'^model\s*\{$')

class ModelSyntaxError(ValueError):
    '''Model text that cannot be parsed.'''

class ModelMismatch(ValueError):
    '''Model text that disagrees with the PyMC model or the supplied data.'''

@dataclass(frozen=True)
class Comment:
    text: str

    def to_lines(self, depth=0):
        return [f'{INDENT * depth}# {self.text}']

@dataclass(frozen=True)
class Stochastic:
    '''node ~ distribution(args)'''
    node: str
    distribution: str
    args: Tuple[str, ...] = ()

    def to_lines(self, depth=0):
        args = ', '.join(self.args)
        return [f'{INDENT * depth}{self.node} ~ {self.distribution}({args})']

@dataclass(frozen=True)
class Deterministic:
    '''node <- expression, or link(node) <- expression'''
    node: str
    expression: str
    link: str = None

    def to_lines(self, depth=0):
        lhs = f'{self.link}({self.node})' if self.link else self.node
        return [f'{INDENT * depth}{lhs} <- {self.expression}']

@dataclass(frozen=True)
class Loop:
    '''for (index in lower:upper) { body }'''
    index: str
    lower: str
    upper: str
    body: Tuple['Statement', ...] = ()

    def to_lines(self, depth=0):
        pad = INDENT * depth
        lines = [f'{pad}for ({self.index} in {self.lower}:{self.upper}) {{']
        for statement in self.body:
            lines.extend(statement.to_lines(depth + 1))
        lines.append(f'{pad}}}')
        return lines

Statement = Union[Comment, Stochastic, Deterministic, Loop]

@dataclass(frozen=True)
class ModelSpec:
    '''A BUGS model: an ordered tuple of statements.'''
    statements: Tuple[Statement, ...] = field(default_factory=tuple)

    def to_text(self) -> str:
        lines = ['model {']
        for statement in self.statements:
            lines.extend(statement.to_lines(1))
        lines.append('}')
        return '\n'.join(lines) + '\n'

    def walk(self):
        """Yield every statement, descending into loop bodies."""
        stack = list(reversed(self.statements))
        while stack:
            statement = stack.pop()
            yield statement
            if isinstance(statement, Loop):
                stack.extend(reversed(statement.body))

    def stochastic(self) -> dict:
        '''Map each stochastic node's base name to its distribution.'''
        return {base_name(s.node): s.distribution for s in self.walk()
                if isinstance(s, Stochastic)}

    def defined_names(self) -> set:
        return {base_name(s.node) for s in self.walk()
                if isinstance(s, (Stochastic, Deterministic))}

    def free_names(self) -> set:
        """Names the text uses but never defines; these must come as data."""
        used = set()
        indices = set()
        for statement in self.walk():
            if isinstance(statement, Stochastic):
                used.update(*(names_in(arg) for arg in statement.args))
                used.update(names_in(index_part(statement.node)))
            elif isinstance(statement, Deterministic):
                used.update(names_in(statement.expression))
                used.update(names_in(index_part(statement.node)))
            elif isinstance(statement, Loop):
                indices.add(statement.index)
                used.update(names_in(statement.lower))
                used.update(names_in(statement.upper))
        return used - indices - self.defined_names()

def base_name(node: str) -> str:
    '''y[i,j] -> y'''
    return node.split('[')[0].strip()

def index_part(node: str) -> str:
    return node[len(base_name(node)):]

def pymc_name(node: str) -> str:
    '''BUGS allows dots in names, PyMC names use underscores.'''
    return base_name(node).replace('.', '_')

def names_in(expression: str) -> set:
    """Variable names in an expression, skipping function calls."""
    return set(NAME_RE.findall(expression))

def split_args(text: str) -> Tuple[str, ...]:
    """Split on commas that are not nested inside brackets."""
    args = []
    depth = 0
    current = ''
    for char in text:
        if char in '([':
            depth += 1
        elif char in ')]':
            depth -= 1
        if char == ',' and depth == 0:
            args.append(current.strip())
            current = ''
        else:
            current += char
    if current.strip():
        args.append(current.strip())
    return tuple(args)

def normalize(text: str) -> str:
    return ' '.join(text.split())

def parse_statement(line: str, line_number: int) -> Statement:
    '''Parse one non-loop statement.'''
    match = STOCHASTIC_RE.match(line)
    if match:
        node, distribution, args = match.groups()
        return Stochastic(normalize(node), distribution, split_args(args))

    match = DETERMINISTIC_RE.match(line)
    if match:
        lhs, expression = match.groups()
        link = None
        link_match = LINK_RE.match(lhs.strip())
        if link_match and link_match.group(1) in LINK_FUNCTIONS:
            link, lhs = link_match.groups()
        return Deterministic(normalize(lhs), normalize(expression), link)

    raise ModelSyntaxError(f'line {line_number}: cannot parse "{line}"')

def parse_model(text: str) -> ModelSpec:
    """Parse BUGS model text into a ModelSpec."""
    # each open block is [loop header or None for the model block, body]
    stack = []
    statements = None
    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue

        if line.startswith('#'):
            if not stack:
                continue
            stack[-1][1].append(Comment(line.lstrip('#').strip()))
            continue

        if not stack:
            if statements is not None or not MODEL_RE.match(line):
                raise ModelSyntaxError(
                    f'line {line_number}: expected "model {{", got "{line}"'
                )
            stack.append([None, []])
            continue

        match = FOR_RE.match(line)
        if match:
            index, lower, upper = (g.strip() for g in match.groups())
            stack.append([(index, lower, upper), []])
            continue

        if line == '}':
            header, body = stack.pop()
            if header is None:
                statements = tuple(body)
            else:
                stack[-1][1].append(Loop(*header, body=tuple(body)))
            continue

        stack[-1][1].append(parse_statement(line, line_number))

    if stack or statements is None:
        raise ModelSyntaxError('model block is not closed')

    return ModelSpec(statements)

def write_model(spec: ModelSpec, path: str) -> str:
    '''Write the model text to path and return the path.'''
    with open(path, 'w') as f:
        f.write(spec.to_text())
    logging.debug(f'Wrote model text to {path}')
    return path

def read_model(path: str) -> ModelSpec:
    with open(path) as f:
        text = f.read()
    logging.debug(f'Read model text from {path}')
    return parse_model(text)

def check_families(spec: ModelSpec, model: pm.Model) -> list:
    """Compare the stochastic nodes of the text with those of a PyMC model.

    Every stochastic node in the text must be a random variable of the same
    family in the PyMC model, and vice versa.

    Returns:
        A list of strings describing each disagreement, empty if none.
    """
    problems = []

    text_nodes = {
        pymc_name(name): dist for name, dist in spec.stochastic().items()
    }
    model_nodes = {
        rv.name: rv.owner.op.name
        for rv in model.free_RVs + model.observed_RVs
    }

    for name, distribution in text_nodes.items():
        if name not in model_nodes:
            problems.append(f'{name} is stochastic in the text only')
            continue
        family = PYMC_FAMILIES.get(distribution)
        if family is None:
            problems.append(f'{name}: unknown distribution {distribution}')
        elif family != model_nodes[name]:
            problems.append(
                f'{name}: {distribution} in the text, '
                f'{model_nodes[name]} in the PyMC model'
            )

    for name in model_nodes.keys() - text_nodes.keys():
        problems.append(f'{name} is stochastic in the PyMC model only')

    return problems
