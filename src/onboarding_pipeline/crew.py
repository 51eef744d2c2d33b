from crewai import Agent, Crew, Process, Task
from crewai.project import CrewBase, agent, crew, task

from .models import ExtractionVerdict
from .router.router import llmrouter
from .tools.ocr import ocr_extract
from .tools.runlog import persist_runlog


@CrewBase
class DocumentCheckCrew:
    """Extractor reads the documents, judge compares them with the submission and rules."""

    agents_config = 'config/agents.yaml'
    tasks_config = 'config/tasks.yaml'

    # ──────────────── Agents ────────────────
    @agent
    def extractor(self) -> Agent:
        return Agent(
            config=self.agents_config['extractor'],
            tools=[ocr_extract, persist_runlog],
            verbose=True,
            llm=llmrouter(),
            max_iter=3,
            allow_delegation=False,
        )

    @agent
    def judge(self) -> Agent:
        return Agent(
            config=self.agents_config['judge'],
            tools=[persist_runlog],
            verbose=True,
            llm=llmrouter(),
            max_iter=1,
            allow_delegation=False,
        )

    # ──────────────── Tasks ────────────────
    @task
    def extract_task(self) -> Task:
        return Task(
            config=self.tasks_config['extract_task'],
            agent=self.extractor(),
        )

    @task
    def judge_task(self) -> Task:
        return Task(
            config=self.tasks_config['judge_task'],
            agent=self.judge(),
            context=[self.extract_task()],
            output_pydantic=ExtractionVerdict,
        )

    # ──────────────── Crew ────────────────
    @crew
    def crew(self) -> Crew:
        return Crew(
            agents=[self.extractor(), self.judge()],
            tasks=[self.extract_task(), self.judge_task()],
            process=Process.sequential,
            verbose=True,
        )
