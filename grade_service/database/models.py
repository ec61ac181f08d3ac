# SQLAlchemy模型定义
from sqlalchemy import (
    Column, BigInteger, Integer, String, DateTime, Text, JSON, Enum, DECIMAL,
    Index, UniqueConstraint, func
)
from .connection import Base
from .enums import AssessmentCategory, AverageType


class Subject(Base):
    """科目模型（参考数据）"""
    __tablename__ = "subjects"

    id = Column(String(36), primary_key=True, comment="科目ID")
    name = Column(String(100), nullable=False, comment="科目名称")
    name_km = Column(String(100), nullable=True, comment="科目名称(高棉语)")
    code = Column(String(30), nullable=False, unique=True, comment="科目代码")
    created_at = Column(DateTime, default=func.now(), nullable=False)


class AssessmentType(Base):
    """考核类型模型（参考数据，极少变更）"""
    __tablename__ = "assessment_types"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    code = Column(String(30), nullable=False, unique=True, comment="考核代码")
    name = Column(String(100), nullable=False, comment="考核名称")
    category = Column(Enum(AssessmentCategory), nullable=False, comment="考核类别")
    grade_level = Column(String(20), nullable=True, comment="适用年级")
    default_weight = Column(DECIMAL(5, 2), nullable=False, default=0, comment="默认权重")
    max_score = Column(DECIMAL(6, 2), nullable=False, default=100, comment="满分")
    display_order = Column(Integer, default=0, comment="显示顺序")
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_assessment_types_category', 'category'),
    )


class Grade(Base):
    """成绩录入模型"""
    __tablename__ = "grades"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    teacher_id = Column(String(36), nullable=False, comment="录入教师ID")
    student_id = Column(String(36), nullable=False, comment="学生ID")
    class_id = Column(String(36), nullable=False, comment="班级ID")
    subject_id = Column(String(36), nullable=False, comment="科目ID")
    assessment_type_code = Column(String(30), nullable=False, comment="考核代码")
    score = Column(DECIMAL(6, 2), nullable=False, comment="得分")
    max_score = Column(DECIMAL(6, 2), nullable=False, default=100, comment="满分")
    semester = Column(Integer, nullable=False, comment="学期(1或2)")
    academic_year = Column(String(20), nullable=False, comment="学年")
    comments = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'student_id', 'class_id', 'subject_id', 'assessment_type_code',
            'semester', 'academic_year',
            name='uk_grade_entry'
        ),
        Index('idx_grades_student', 'student_id', 'academic_year'),
        Index('idx_grades_class', 'class_id', 'semester', 'academic_year'),
    )


class SemesterConfig(Base):
    """学期考试安排配置模型

    teacher_id 为空表示系统默认配置，教师可用自己的配置覆盖默认配置。
    exam_schedule 以有序JSON数组保存:
    [{"assessmentCode": "MONTHLY_1", "title": "November", "displayOrder": 1, "weight": null}, ...]
    """
    __tablename__ = "semester_configs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    teacher_id = Column(String(36), nullable=True, comment="教师ID(为空表示默认配置)")
    academic_year = Column(String(20), nullable=False, comment="学年(YYYY-YYYY)")
    semester_exam_code = Column(String(30), nullable=False, comment="学期考试代码")
    exam_schedule = Column(JSON, nullable=False, comment="考试安排JSON")
    monthly_weight = Column(DECIMAL(5, 2), nullable=True, comment="月考权重")
    semester_weight = Column(DECIMAL(5, 2), nullable=True, comment="期末考试权重")
    annual_weight = Column(DECIMAL(5, 2), nullable=True, comment="本学期在学年平均中的权重")
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'teacher_id', 'academic_year', 'semester_exam_code',
            name='uk_semester_config'
        ),
        Index('idx_semester_config_year', 'academic_year'),
    )

    @property
    def is_default(self) -> bool:
        return self.teacher_id is None


class GradeAverage(Base):
    """预计算平均分模型（派生数据，只由计算引擎写入）"""
    __tablename__ = "grade_averages"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    teacher_id = Column(String(36), nullable=False, comment="教师ID")
    student_id = Column(String(36), nullable=False, comment="学生ID")
    class_id = Column(String(36), nullable=False, comment="班级ID")
    subject_id = Column(String(36), nullable=True, comment="科目ID(全科平均为空)")
    semester = Column(Integer, nullable=True, comment="学期(学年平均为空)")
    academic_year = Column(String(20), nullable=False, comment="学年")
    average_type = Column(Enum(AverageType), nullable=False, comment="平均分类型")
    average_score = Column(DECIMAL(5, 2), nullable=False, comment="平均分")
    letter_grade = Column(String(2), nullable=False, comment="等级")
    class_rank = Column(Integer, nullable=True, comment="班级排名")
    subject_rank = Column(Integer, nullable=True, comment="科目排名")
    total_students = Column(Integer, nullable=True, comment="参与排名人数")
    source_fingerprint = Column(String(64), nullable=False, comment="来源数据指纹")
    calculated_at = Column(DateTime, nullable=False, comment="计算时间")

    __table_args__ = (
        UniqueConstraint(
            'student_id', 'class_id', 'subject_id', 'semester', 'academic_year', 'average_type',
            name='uk_grade_average'
        ),
        Index('idx_averages_rankings', 'class_id', 'semester', 'academic_year', 'average_type'),
        Index('idx_averages_student_year', 'student_id', 'academic_year'),
    )
